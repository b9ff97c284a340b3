import hmac
from flask import request, jsonify, abort, current_app, render_template
from . import bp
from tellsafe.extensions import db, csrf, limiter
from tellsafe.models import Organization
from tellsafe.observability import log_event
from tellsafe.services import get_services, tokens
from tellsafe.services.digest import run_scheduled_digests
from tellsafe.utils.helpers import utcnow

def _authorized() -> bool:
    secret = current_app.config.get("CRON_SECRET")
    if not secret:
        return False
    header = request.headers.get("Authorization", "")
    return hmac.compare_digest(header, f"Bearer {secret}")

@csrf.exempt
@bp.post("/internal/digest/run")
def run_digest():
    """
    Scheduler → /internal/digest/run[?org=<slug>]
    Builds and sends the trailing-period digest; per-org outcomes in the body.
    """
    if not _authorized():
        return jsonify({"error": "unauthorized", "code": 401}), 401

    services = get_services()
    results = run_scheduled_digests(
        builder=services.digest_builder,
        dispatcher=services.dispatcher,
        session=db.session,
        now=utcnow(),
        period_days=current_app.config.get("DIGEST_PERIOD_DAYS", 7),
        org_slug=(request.args.get("org") or "").strip().lower() or None,
    )
    sent = sum(1 for r in results if r["sent"])
    return jsonify({"ok": True, "message": f"Sent {sent} digest email(s)", "results": results}), 200

def _optout_org(token: str) -> Organization:
    slug = tokens.verify(tokens.DIGEST_OPTOUT, token, max_age_seconds=tokens.OPTOUT_MAX_AGE_SECONDS)
    if not slug:
        abort(400, description="Invalid or expired link")
    org = db.session.query(Organization).filter_by(slug=slug).one_or_none()
    if not org:
        abort(404)
    return org

@bp.get("/digest/unsubscribe")
@limiter.limit("30/minute")
def unsubscribe_confirm():
    """Link target in the email. Read-only: mail scanners prefetch GET links."""
    token = request.args.get("token", "")
    org = _optout_org(token)
    return render_template("digest/unsubscribe_confirm.html", org=org, token=token), 200

@csrf.exempt
@bp.post("/digest/unsubscribe")
@limiter.limit("30/minute")
def unsubscribe():
    # The signed token is the credential; there is no session to carry a CSRF token
    org = _optout_org(request.form.get("token", ""))
    if org.digest_enabled:
        org.digest_enabled = False
        db.session.commit()
        log_event(current_app.logger, "digest_unsubscribed", org_id=org.id)
    return render_template("digest/unsubscribed.html", org=org), 200
