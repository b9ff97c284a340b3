from flask import request, jsonify, abort, current_app
from . import bp
from tellsafe.extensions import csrf, limiter
from tellsafe.errors import InvalidSignatureError, MalformedPayloadError
from tellsafe.observability import log_event
from tellsafe.services import get_services
from tellsafe.services.webhooks import SOURCES
import logging

@csrf.exempt
@bp.post("/<source_type>")
@limiter.limit("600/minute")
def receive(source_type: str):
    """
    Provider → /webhooks/<source_type>
    200 on accept, duplicate or ignored shape; 400 malformed; 401 bad signature.
    """
    if source_type not in SOURCES:
        abort(404)

    raw = request.get_data(cache=False, as_text=False) or b""
    try:
        result = get_services().webhooks.ingest(raw, source_type, request.headers)
    except InvalidSignatureError as e:
        # Discard without persisting anything from an unverified body
        log_event(current_app.logger, "webhook_signature_invalid", logging.WARNING,
                  source=source_type, reason=str(e), remote_addr=request.remote_addr)
        return jsonify({"error": "invalid_signature"}), 401
    except MalformedPayloadError as e:
        log_event(current_app.logger, "webhook_malformed", logging.WARNING, source=source_type, reason=str(e))
        return jsonify({"error": "malformed_payload", "detail": str(e)}), 400

    body = {"ok": True}
    if result.outcome == "duplicate":
        body["duplicate"] = True
    elif result.outcome == "ignored":
        body["ignored"] = result.reason
    return jsonify(body), 200
