import json

import click
from flask.cli import with_appcontext

from tellsafe.extensions import db
from tellsafe.errors import InvalidTransitionError, KeyUnavailableError
from tellsafe.models import FeedbackResponse, Organization, OrgMember, Survey, UpdateEvent, ROLE_ADMIN
from tellsafe.models.feedback_response import RESPONSE_STATUSES
from tellsafe.models.org_membership import ROLE_CHOICES
from tellsafe.models.digest_record import DigestRecord
from tellsafe.services import get_services
from tellsafe.services.alerts import detect_platform
from tellsafe.services.crypto import verify_key
from tellsafe.services.digest import run_scheduled_digests
from tellsafe.services.notifications import pending_deliveries
from tellsafe.utils.helpers import utcnow
from tellsafe.utils.validators import clean_str, is_valid_email, is_valid_slug


def _get_org(slug: str) -> Organization:
    org = db.session.query(Organization).filter_by(slug=slug).one_or_none()
    if not org:
        raise click.ClickException(f"Org {slug!r} not found")
    return org

def _get_survey(survey_id: int) -> Survey:
    survey = db.session.get(Survey, survey_id)
    if not survey:
        raise click.ClickException(f"Survey id {survey_id} not found")
    return survey

# ---- orgs ----

@click.group()
def orgs():
    """Organization management."""

@orgs.command("create")
@click.option("--slug", required=True)
@click.option("--name", required=True)
@with_appcontext
def orgs_create(slug, name):
    slug = (slug or "").strip().lower()
    if not is_valid_slug(slug):
        raise click.ClickException("Slug must be lowercase letters, digits and dashes")
    if db.session.query(Organization).filter_by(slug=slug).count():
        raise click.ClickException("Org already exists")

    org = Organization(slug=slug, name=clean_str(name, 255), is_active=True)
    db.session.add(org)
    db.session.commit()

    if slug not in get_services().key_provider.slugs():
        click.echo(f"warning: no encryption key configured for {slug!r}; responses will be refused", err=True)
    click.echo(f"Org created id={org.id} slug={org.slug}")

@orgs.command("add-member")
@click.option("--org", "org_slug", required=True)
@click.option("--email", required=True)
@click.option("--name", default=None)
@click.option("--role", type=click.Choice(ROLE_CHOICES), default=ROLE_ADMIN)
@click.option("--no-digest", is_flag=True, help="Do not send the periodic digest to this member")
@with_appcontext
def orgs_add_member(org_slug, email, name, role, no_digest):
    email = (email or "").strip().lower()
    if not is_valid_email(email):
        raise click.ClickException("Invalid email")
    org = _get_org(org_slug)

    m = db.session.query(OrgMember).filter_by(org_id=org.id, email=email).one_or_none()
    if m:
        m.role = role
        m.receives_digest = not no_digest
    else:
        m = OrgMember(org_id=org.id, email=email, display_name=clean_str(name, 255),
                      role=role, receives_digest=not no_digest)
        db.session.add(m)
    db.session.commit()
    click.echo(f"Member {email} in org {org.slug} role={role} digest={'off' if no_digest else 'on'}")

@orgs.command("configure")
@click.option("--org", "org_slug", required=True)
@click.option("--category", "categories", multiple=True, help="Replace the feedback category list; repeat for each")
@click.option("--chat-webhook", default=None, help="Slack or Discord incoming-webhook URL for new-response alerts")
@click.option("--no-chat-webhook", is_flag=True, help="Stop new-response alerts")
@with_appcontext
def orgs_configure(org_slug, categories, chat_webhook, no_chat_webhook):
    if chat_webhook and no_chat_webhook:
        raise click.ClickException("Use either --chat-webhook or --no-chat-webhook")
    org = _get_org(org_slug)
    if categories:
        cleaned = []
        for name in categories:
            name = clean_str(name, 64)
            if name and name not in cleaned:
                cleaned.append(name)
        org.feedback_categories = cleaned
    if chat_webhook:
        if detect_platform(chat_webhook) is None:
            raise click.ClickException("Chat webhook must be an https Slack or Discord webhook URL")
        org.chat_webhook_url = chat_webhook
    elif no_chat_webhook:
        org.chat_webhook_url = None
    db.session.commit()
    click.echo(f"Org {org.slug} categories={','.join(org.feedback_categories or []) or '-'} "
               f"chat_alerts={'on' if org.chat_webhook_url else 'off'}")

# ---- surveys ----

@click.group()
def surveys():
    """Survey lifecycle."""

@surveys.command("create")
@click.option("--org", "org_slug", required=True)
@click.option("--title", required=True)
@click.option("--question", "questions", multiple=True, required=True,
              help="key=prompt; repeat for each question")
@with_appcontext
def surveys_create(org_slug, title, questions):
    org = _get_org(org_slug)
    parsed = []
    seen = set()
    for raw in questions:
        key, sep, prompt = raw.partition("=")
        key = key.strip()
        if not sep or not key or not prompt.strip():
            raise click.ClickException(f"Question must look like key=prompt: {raw!r}")
        if key in seen:
            raise click.ClickException(f"Duplicate question key: {key}")
        seen.add(key)
        parsed.append({"key": key, "prompt": prompt.strip(), "kind": "text"})

    survey = Survey(org_id=org.id, title=clean_str(title, 255), questions=parsed)
    db.session.add(survey)
    db.session.commit()
    click.echo(f"Survey created id={survey.id} org={org.slug} status={survey.status}")

def _move_survey(survey_id: int, action: str) -> None:
    survey = _get_survey(survey_id)
    try:
        getattr(survey, action)()
    except InvalidTransitionError as e:
        raise click.ClickException(str(e))
    db.session.commit()
    click.echo(f"Survey {survey.id} is now {survey.status}")

@surveys.command("publish")
@click.argument("survey_id", type=int)
@with_appcontext
def surveys_publish(survey_id):
    _move_survey(survey_id, "publish")

@surveys.command("archive")
@click.argument("survey_id", type=int)
@with_appcontext
def surveys_archive(survey_id):
    _move_survey(survey_id, "archive")

# ---- updates ----

@click.group()
def updates():
    """Changelog entries."""

@updates.command("post")
@click.option("--org", "org_slug", required=True)
@click.option("--title", required=True)
@click.option("--body", default="")
@click.option("--category", default=None)
@click.option("--draft", is_flag=True, help="Store without publishing")
@with_appcontext
def updates_post(org_slug, title, body, category, draft):
    org = _get_org(org_slug)
    event = UpdateEvent(
        org_id=org.id,
        title=clean_str(title, 255),
        body=body or "",
        category=clean_str(category, 64),
        is_published=not draft,
    )
    db.session.add(event)
    db.session.commit()
    click.echo(f"Update posted id={event.id} org={org.slug} published={event.is_published}")

# ---- responses ----

@click.group()
def responses():
    """Feedback triage."""

@responses.command("set-status")
@click.argument("response_id", type=int)
@click.argument("status", type=click.Choice(RESPONSE_STATUSES))
@with_appcontext
def responses_set_status(response_id, status):
    response = db.session.get(FeedbackResponse, response_id)
    if not response:
        raise click.ClickException(f"Response id {response_id} not found")
    response.set_status(status)
    db.session.commit()
    click.echo(f"Response {response.id} is now {response.status}")

# ---- digest ----

@click.group()
def digest():
    """Periodic digest."""

@digest.command("run")
@click.option("--org", "org_slug", default=None, help="Only this org")
@with_appcontext
def digest_run(org_slug):
    from flask import current_app

    services = get_services()
    results = run_scheduled_digests(
        builder=services.digest_builder,
        dispatcher=services.dispatcher,
        session=db.session,
        now=utcnow(),
        period_days=current_app.config.get("DIGEST_PERIOD_DAYS", 7),
        org_slug=org_slug,
    )
    for r in results:
        click.echo(json.dumps(r, default=str))
    click.echo(f"Sent {sum(1 for r in results if r['sent'])} digest email(s)")

@digest.command("resend")
@click.option("--id", "digest_id", type=int, default=None, help="One record; default is every unsent ready digest")
@with_appcontext
def digest_resend(digest_id):
    dispatcher = get_services().dispatcher
    if digest_id is not None:
        record = db.session.get(DigestRecord, digest_id)
        if not record:
            raise click.ClickException(f"Digest id {digest_id} not found")
        records = [record]
    else:
        records = pending_deliveries(db.session)

    if not records:
        click.echo("Nothing to resend")
        return
    failed = 0
    for record in records:
        outcome = dispatcher.send(record)
        if outcome.ok:
            click.echo(f"digest {record.id}: sent to {len(outcome.recipients)} recipient(s)")
        else:
            failed += 1
            click.echo(f"digest {record.id}: {outcome.reason} {outcome.error or ''}".rstrip())
    if failed:
        raise click.ClickException(f"{failed} digest(s) still unsent")

# ---- keys ----

@click.group()
def keys():
    """Encryption key checks."""

@keys.command("check")
@with_appcontext
def keys_check():
    provider = get_services().key_provider
    configured = set(provider.slugs())
    slugs = sorted(configured | {o.slug for o in db.session.query(Organization).all()})
    bad = 0
    for slug in slugs:
        try:
            ok = verify_key(provider.key_for(slug))
            detail = "ok" if ok else "round-trip failed"
        except KeyUnavailableError as e:
            ok, detail = False, str(e)
        if not ok:
            bad += 1
        click.echo(f"{slug}: {detail}")
    if bad:
        raise click.ClickException(f"{bad} org key(s) unusable")

def register_cli(app):
    app.cli.add_command(orgs)
    app.cli.add_command(surveys)
    app.cli.add_command(updates)
    app.cli.add_command(responses)
    app.cli.add_command(digest)
    app.cli.add_command(keys)
