from flask import request, jsonify, current_app
from . import bp
from tellsafe.extensions import db, csrf, limiter
from tellsafe.errors import KeyUnavailableError, MalformedPayloadError, SurveyClosedError
from tellsafe.models import Organization, Survey
from tellsafe.services import get_services
from tellsafe.services.responses import submit_response

def _error(code: str, status: int, detail: str | None = None):
    payload = {"error": code, "code": status}
    if detail:
        payload["detail"] = detail
    return jsonify(payload), status

@csrf.exempt
@bp.post("/orgs/<slug>/surveys/<int:survey_id>/responses")
@limiter.limit("20/minute")
def create_response(slug: str, survey_id: int):
    """Anonymous respondent submission; answers are encrypted before they touch the DB."""
    org = db.session.query(Organization).filter_by(slug=slug.lower()).one_or_none()
    if not org or not org.is_active:
        return _error("not_found", 404)
    survey = db.session.query(Survey).filter_by(id=survey_id, org_id=org.id).one_or_none()
    if not survey:
        return _error("not_found", 404)

    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return _error("malformed_payload", 400, "body must be a JSON object")

    services = get_services()
    try:
        response = submit_response(
            db.session,
            org=org,
            survey=survey,
            answers=body.get("answers"),
            key_provider=services.key_provider,
            tagger=services.tagger,
            categories=body.get("categories"),
            alerter=services.alerter,
        )
    except MalformedPayloadError as e:
        return _error("malformed_payload", 400, str(e))
    except SurveyClosedError:
        return _error("survey_closed", 409)
    except KeyUnavailableError:
        current_app.logger.error("encryption key unavailable for org_id=%s", org.id)
        return _error("unavailable", 503)

    return jsonify({"ok": True, "id": response.id}), 201
