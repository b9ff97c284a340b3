"""
Inbound webhook normalization.

Every provider delivery is verified, parsed into an ``InternalEvent`` and
persisted at most once per (source, provider event id). Payload shapes are
keyed by source type:

- ``email-status``: delivery/bounce/complaint notifications (HMAC signed)
- ``email-reply``: inbound replies to relay addresses (HMAC signed)
- ``stripe``: subscription lifecycle events (Stripe-Signature)

Shapes a source does not handle come back as ``RejectedPayload``.
"""
import re
import hmac
import json
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

import stripe
from sqlalchemy.exc import IntegrityError

from tellsafe.errors import InvalidSignatureError, MalformedPayloadError, KeyUnavailableError
from tellsafe.models import InboundEvent, Organization, EmailLog
from tellsafe.models.org import BILLING_ACTIVE, BILLING_CANCELED, BILLING_PAST_DUE
from tellsafe.observability import log_event
from tellsafe.services import crypto

SOURCE_EMAIL_STATUS = "email-status"
SOURCE_EMAIL_REPLY = "email-reply"
SOURCE_STRIPE = "stripe"
SOURCES = (SOURCE_EMAIL_STATUS, SOURCE_EMAIL_REPLY, SOURCE_STRIPE)

KIND_MAIL_STATUS = "mail.status"
KIND_RELAY_REPLY = "relay.reply"
KIND_BILLING_STATUS = "billing.status"

_MAIL_STATUS_MAP = {
    "delivered": "delivered",
    "bounce": "bounced",
    "bounced": "bounced",
    "complaint": "complaint",
    "spamreport": "complaint",
}

_STRIPE_SUBSCRIPTION_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)

_QUOTE_MARKERS = (
    re.compile(r"^On .+ wrote:$", re.IGNORECASE),
    re.compile(r"^>"),
    re.compile(r"^-{3,}"),
    re.compile(r"^_{3,}"),
    re.compile(r"^(From|Sent|To|Subject):"),
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InternalEvent:
    source: str
    provider_event_id: str
    kind: str
    data: dict = field(default_factory=dict)


@dataclass(frozen=True)
class RejectedPayload:
    source: str
    reason: str
    provider_event_id: Optional[str] = None


@dataclass
class IngestResult:
    outcome: str  # accepted | duplicate | ignored
    event: Optional[InternalEvent] = None
    record: Optional[InboundEvent] = None
    reason: Optional[str] = None


def sign_payload(secret: str, timestamp: str, raw_body: bytes) -> str:
    """HMAC-SHA256 over ``timestamp + "." + body``, hex encoded."""
    return hmac.new(secret.encode("utf-8"), (timestamp + ".").encode("utf-8") + raw_body, hashlib.sha256).hexdigest()


def strip_email_quotes(text: str) -> str:
    """Keep only the new content of a reply; stop at the first quote marker."""
    kept = []
    for line in (text or "").splitlines():
        if any(p.match(line.strip()) for p in _QUOTE_MARKERS):
            break
        kept.append(line)
    return "\n".join(kept).strip()


def html_to_text(html: str) -> str:
    if not html:
        return ""
    text = re.sub(r"<br\s*/?>", "\n", html, flags=re.IGNORECASE)
    text = re.sub(r"</p>", "\n\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", "", text)
    for entity, char in (("&nbsp;", " "), ("&lt;", "<"), ("&gt;", ">"), ("&quot;", '"'), ("&amp;", "&")):
        text = text.replace(entity, char)
    return text.strip()


def _require(obj: Mapping[str, Any], *keys: str) -> None:
    missing = [k for k in keys if not obj.get(k)]
    if missing:
        raise MalformedPayloadError(f"missing required field(s): {', '.join(missing)}")


def _parse_json(raw_body: bytes) -> dict:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedPayloadError("body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise MalformedPayloadError("body must be a JSON object")
    return payload


class WebhookNormalizer:
    def __init__(self, *, session, key_provider, email_secret: Optional[str], stripe_secret: Optional[str],
                 relay_domain: str = "tellsafe.app", stripe_webhook=None):
        self.session = session
        self.key_provider = key_provider
        self.email_secret = email_secret
        self.stripe_secret = stripe_secret
        self.relay_domain = relay_domain
        self._stripe_webhook = stripe_webhook
        self._relay_re = re.compile(
            r"relay\+(?P<org>[a-z0-9-]+)\.(?P<thread>[A-Za-z0-9_-]+)@" + re.escape(relay_domain),
            re.IGNORECASE,
        )

    @classmethod
    def from_config(cls, config, *, session, key_provider) -> "WebhookNormalizer":
        return cls(
            session=session,
            key_provider=key_provider,
            email_secret=config.get("EMAIL_WEBHOOK_SECRET"),
            stripe_secret=config.get("STRIPE_WEBHOOK_SECRET"),
            relay_domain=config.get("RELAY_ADDRESS_DOMAIN", "tellsafe.app"),
        )

    # ---- verification ----

    def _verify_hmac(self, raw_body: bytes, headers: Mapping[str, str]) -> None:
        if not self.email_secret:
            raise InvalidSignatureError("email webhook secret is not configured")
        timestamp = headers.get("x-timestamp", "")
        signature = headers.get("x-signature", "")
        if not timestamp or not signature:
            raise InvalidSignatureError("missing signature headers")
        expected = sign_payload(self.email_secret, timestamp, raw_body)
        if not hmac.compare_digest(expected, signature):
            raise InvalidSignatureError("signature mismatch")

    def _verify_stripe(self, raw_body: bytes, headers: Mapping[str, str]) -> dict:
        if not self.stripe_secret:
            raise InvalidSignatureError("stripe webhook secret is not configured")
        webhook = self._stripe_webhook or stripe.Webhook
        try:
            event = webhook.construct_event(
                payload=raw_body.decode("utf-8"),
                sig_header=headers.get("stripe-signature", ""),
                secret=self.stripe_secret,
            )
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignatureError("stripe signature verification failed") from exc
        except (UnicodeDecodeError, ValueError) as exc:
            raise MalformedPayloadError("stripe payload is not valid JSON") from exc
        if hasattr(event, "to_dict_recursive"):
            event = event.to_dict_recursive()
        elif hasattr(event, "to_dict"):
            event = event.to_dict()
        return dict(event)

    # ---- per-source parsing ----

    def _email_status(self, payload: dict) -> Union[InternalEvent, RejectedPayload]:
        _require(payload, "id", "event", "email")
        event = str(payload["event"]).lower()
        status = _MAIL_STATUS_MAP.get(event)
        if status is None:
            return RejectedPayload(SOURCE_EMAIL_STATUS, f"unsupported_event:{event}", str(payload["id"]))
        return InternalEvent(
            source=SOURCE_EMAIL_STATUS,
            provider_event_id=str(payload["id"]),
            kind=KIND_MAIL_STATUS,
            data={
                "status": status,
                "email": str(payload["email"]).strip().lower(),
                "message_id": payload.get("message_id"),
                "template": str(payload.get("template") or "unknown")[:64],
                "subject": str(payload.get("subject") or ""),
            },
        )

    def _email_reply(self, payload: dict) -> Union[InternalEvent, RejectedPayload]:
        _require(payload, "type")
        if payload["type"] != "email.received":
            return RejectedPayload(SOURCE_EMAIL_REPLY, f"unsupported_type:{payload['type']}")
        data = payload.get("data")
        if not isinstance(data, dict):
            raise MalformedPayloadError("missing required field(s): data")
        _require(data, "email_id", "to")
        email_id = str(data["email_id"])
        recipients = data["to"] if isinstance(data["to"], list) else [data["to"]]

        match = None
        for addr in recipients:
            match = self._relay_re.search(str(addr))
            if match:
                break
        if not match:
            return RejectedPayload(SOURCE_EMAIL_REPLY, "no_relay_address", email_id)

        for part in ("text", "html"):
            if data.get(part) is not None and not isinstance(data[part], str):
                raise MalformedPayloadError(f"data.{part} must be a string")
        text = strip_email_quotes(data.get("text") or html_to_text(data.get("html") or ""))
        if not text:
            return RejectedPayload(SOURCE_EMAIL_REPLY, "empty_reply", email_id)
        return InternalEvent(
            source=SOURCE_EMAIL_REPLY,
            provider_event_id=email_id,
            kind=KIND_RELAY_REPLY,
            data={
                "org_slug": match.group("org").lower(),
                "thread_id": match.group("thread"),
                "text": text,
            },
        )

    def _stripe_event(self, event: dict) -> Union[InternalEvent, RejectedPayload]:
        _require(event, "id", "type")
        ev_type = event["type"]
        if not isinstance(ev_type, str):
            raise MalformedPayloadError("type must be a string")
        data = event.get("data") or {}
        obj = (data.get("object") or {}) if isinstance(data, dict) else None
        if not isinstance(obj, dict):
            raise MalformedPayloadError("data.object must be an object")
        meta = obj.get("metadata") or {}
        if not isinstance(meta, dict):
            raise MalformedPayloadError("data.object.metadata must be an object")

        if ev_type in _STRIPE_SUBSCRIPTION_EVENTS:
            status = BILLING_CANCELED if ev_type.endswith(".deleted") else (obj.get("status") or "incomplete")
        elif ev_type in ("checkout.session.completed", "invoice.paid"):
            status = BILLING_ACTIVE
        elif ev_type == "invoice.payment_failed":
            status = BILLING_PAST_DUE
        else:
            return RejectedPayload(SOURCE_STRIPE, f"unhandled_type:{ev_type}", str(event["id"]))

        customer = obj.get("customer")
        return InternalEvent(
            source=SOURCE_STRIPE,
            provider_event_id=str(event["id"]),
            kind=KIND_BILLING_STATUS,
            data={
                "type": ev_type,
                "status": status,
                "customer": customer["id"] if isinstance(customer, dict) else customer,
                "subscription": obj.get("subscription") if ev_type.startswith(("invoice.", "checkout.")) else obj.get("id"),
                "org_ref": meta.get("org_id") or meta.get("orgId"),
            },
        )

    def normalize(self, raw_body: bytes, source_type: str, headers: Mapping[str, str]) -> Union[InternalEvent, RejectedPayload]:
        """
        Verify then parse. Raises InvalidSignatureError before looking at the
        body and MalformedPayloadError on missing fields.
        """
        headers = {k.lower(): v for k, v in (headers or {}).items()}
        raw_body = raw_body or b""
        if source_type == SOURCE_EMAIL_STATUS:
            self._verify_hmac(raw_body, headers)
            return self._email_status(_parse_json(raw_body))
        if source_type == SOURCE_EMAIL_REPLY:
            self._verify_hmac(raw_body, headers)
            return self._email_reply(_parse_json(raw_body))
        if source_type == SOURCE_STRIPE:
            return self._stripe_event(self._verify_stripe(raw_body, headers))
        return RejectedPayload(str(source_type), "unknown_source")

    # ---- persistence ----

    def _resolve_org(self, event: InternalEvent) -> Optional[Organization]:
        if event.kind == KIND_RELAY_REPLY:
            return self.session.query(Organization).filter_by(slug=event.data["org_slug"]).one_or_none()
        if event.kind == KIND_BILLING_STATUS:
            ref = event.data.get("org_ref")
            if ref:
                ref = str(ref)
                if ref.isdigit():
                    org = self.session.get(Organization, int(ref))
                else:
                    org = self.session.query(Organization).filter_by(slug=ref).one_or_none()
                if org:
                    return org
            if event.data.get("customer"):
                return self.session.query(Organization).filter_by(stripe_customer_id=event.data["customer"]).first()
        return None

    def _stored_data(self, event: InternalEvent, org: Optional[Organization]) -> tuple[dict, Optional[str]]:
        """Reply text is kept only as org-encrypted ciphertext."""
        data = dict(event.data)
        if "text" not in data:
            return data, None
        text = data.pop("text")
        data["text_chars"] = len(text)
        if org is None:
            return data, "org_not_found"
        try:
            data["text_ciphertext"] = crypto.encrypt(text, self.key_provider.key_for(org))
        except KeyUnavailableError:
            return data, "no_org_key"
        return data, None

    def ingest(self, raw_body: bytes, source_type: str, headers: Mapping[str, str]) -> IngestResult:
        result = self.normalize(raw_body, source_type, headers)
        if isinstance(result, RejectedPayload):
            log_event(logger, "webhook_ignored", source=result.source, reason=result.reason,
                      provider_event_id=result.provider_event_id)
            return IngestResult("ignored", reason=result.reason)

        event = result
        existing = self.session.query(InboundEvent).filter_by(
            source=event.source, provider_event_id=event.provider_event_id
        ).first()
        if existing:
            return IngestResult("duplicate", event=event, record=existing)

        org = self._resolve_org(event)
        data, notes = self._stored_data(event, org)
        record = InboundEvent(
            source=event.source,
            provider_event_id=event.provider_event_id,
            kind=event.kind,
            org_id=org.id if org else None,
            data=data,
            notes=notes,
        )
        self.session.add(record)
        try:
            self.session.commit()
        except IntegrityError:
            # Lost a race with a concurrent delivery of the same event
            self.session.rollback()
            return IngestResult("duplicate", event=event)

        log_event(logger, "webhook_accepted", source=event.source, kind=event.kind,
                  provider_event_id=event.provider_event_id, org_id=record.org_id)
        self._apply_effects(event, record, org)
        return IngestResult("accepted", event=event, record=record)

    # ---- effects ----

    def _apply_effects(self, event: InternalEvent, record: InboundEvent, org: Optional[Organization]) -> None:
        """
        Side effects run after the event row is committed. A failure is noted on
        the row and logged; the delivery is still acknowledged so the provider
        does not retry forever.
        """
        try:
            if event.kind == KIND_MAIL_STATUS:
                self.session.add(EmailLog(
                    to_email=event.data["email"],
                    template=event.data["template"],
                    subject=event.data["subject"][:200],
                    provider_msg_id=event.data.get("message_id"),
                    status=event.data["status"],
                    meta={"provider_event_id": event.provider_event_id},
                ))
            elif event.kind == KIND_BILLING_STATUS and org is not None:
                if event.data.get("customer") and not org.stripe_customer_id:
                    org.stripe_customer_id = event.data["customer"]
                flipped = org.apply_billing_status(event.data["status"])
                log_event(logger, "billing_status_applied", org_id=org.id, status=org.billing_status,
                          is_active=org.is_active, flipped=flipped)
            elif event.kind == KIND_BILLING_STATUS:
                record.notes = "org_not_found"
            self.session.commit()
        except Exception as exc:
            self.session.rollback()
            record.notes = f"handler_error:{type(exc).__name__}"
            self.session.commit()
            logger.exception("webhook_effect_error")
