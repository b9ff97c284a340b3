class TellSafeError(Exception):
    """Base class for errors raised by the feedback core."""

    code = "error"


class DecryptionError(TellSafeError):
    """Ciphertext is malformed, truncated, tampered with, or the key is wrong."""

    code = "decryption_failed"


class KeyUnavailableError(TellSafeError):
    """No usable encryption key is configured for the organization."""

    code = "key_unavailable"


class InvalidSignatureError(TellSafeError):
    """Webhook signature verification failed; the payload must be discarded."""

    code = "invalid_signature"


class MalformedPayloadError(TellSafeError):
    """A required field is missing or the body cannot be parsed."""

    code = "malformed_payload"


class DuplicateDigestError(TellSafeError):
    """A digest for this (org, period) is already built or being built."""

    code = "duplicate_digest"

    def __init__(self, org_id, period_start, period_end, status=None):
        self.org_id = org_id
        self.period_start = period_start
        self.period_end = period_end
        self.status = status
        super().__init__(
            f"digest for org {org_id} {period_start:%Y-%m-%d}..{period_end:%Y-%m-%d} "
            f"already exists (status={status})"
        )


class NoActivityError(TellSafeError):
    """The digest period has nothing to report; callers skip the send."""

    code = "no_activity"


class InvalidTransitionError(TellSafeError):
    code = "invalid_transition"

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"cannot move from {current!r} to {target!r}")


class SurveyClosedError(TellSafeError):
    """The survey is not published, so it does not take responses."""

    code = "survey_closed"
