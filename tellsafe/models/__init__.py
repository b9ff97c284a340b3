from .org import Organization
from .org_membership import OrgMember, ROLE_ADMIN, ROLE_OWNER
from .survey import Survey
from .feedback_response import FeedbackResponse
from .update_event import UpdateEvent
from .inbound_event import InboundEvent
from .digest_record import DigestRecord
from .email_log import EmailLog

__all__ = [
    "Organization",
    "OrgMember",
    "Survey",
    "FeedbackResponse",
    "UpdateEvent",
    "InboundEvent",
    "DigestRecord",
    "EmailLog",
    "ROLE_ADMIN",
    "ROLE_OWNER",
]
