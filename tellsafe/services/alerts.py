"""
New-response alerts to an organization's Slack or Discord channel.

The org stores an incoming-webhook URL; after a response is stored we post a
short card (sentiment, categories, preview, dashboard link). Delivery is best
effort: a failed post is logged and never fails the submission.
"""
import logging
from typing import Optional
from urllib.parse import urlparse

import requests

from tellsafe.observability import log_event
from tellsafe.utils.helpers import excerpt

PLATFORM_SLACK = "slack"
PLATFORM_DISCORD = "discord"

ALLOWED_HOSTS = {
    "hooks.slack.com": PLATFORM_SLACK,
    "discord.com": PLATFORM_DISCORD,
    "discordapp.com": PLATFORM_DISCORD,
}

PREVIEW_CHARS = 150

_SENTIMENT_COLORS = {"positive": 0x059669, "neutral": 0x6B7280, "negative": 0xD97706}
_DEFAULT_COLOR = 0x2D6A6A

logger = logging.getLogger(__name__)


def detect_platform(url: Optional[str]) -> Optional[str]:
    """Platform for an https URL on an allowed host; None for anything else."""
    if not url:
        return None
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if parsed.scheme != "https" or not parsed.hostname:
        return None
    host = parsed.hostname.lower()
    for allowed, platform in ALLOWED_HOSTS.items():
        if host == allowed or host.endswith("." + allowed):
            return platform
    return None


def slack_payload(org_name: str, sentiment: Optional[str], categories: list, preview: str, dashboard_url: str) -> dict:
    fields = [{"type": "mrkdwn", "text": f"*Category:* {', '.join(categories) or 'None'}"}]
    if sentiment:
        fields.append({"type": "mrkdwn", "text": f"*Sentiment:* {sentiment}"})
    return {
        "text": f"New feedback for {org_name}",
        "blocks": [
            {"type": "header", "text": {"type": "plain_text", "text": f"New feedback: {org_name}"}},
            {"type": "section", "fields": fields},
            {"type": "section", "text": {"type": "mrkdwn", "text": f"> {preview}"}},
            {
                "type": "actions",
                "elements": [{
                    "type": "button",
                    "text": {"type": "plain_text", "text": "View in dashboard"},
                    "url": dashboard_url,
                    "style": "primary",
                }],
            },
        ],
    }


def discord_payload(org_name: str, sentiment: Optional[str], categories: list, preview: str, dashboard_url: str) -> dict:
    fields = [{"name": "Category", "value": ", ".join(categories) or "None", "inline": True}]
    if sentiment:
        fields.append({"name": "Sentiment", "value": sentiment, "inline": True})
    return {
        "embeds": [{
            "title": f"New feedback: {org_name}",
            "url": dashboard_url,
            "description": f"> {preview}",
            "color": _SENTIMENT_COLORS.get(sentiment, _DEFAULT_COLOR),
            "fields": fields,
            "footer": {"text": "TellSafe"},
        }],
    }


class ChatAlerter:
    def __init__(self, *, dashboard_url: str, timeout_seconds: float = 5.0, http=None):
        self.dashboard_url = dashboard_url
        self.timeout_seconds = float(timeout_seconds)
        self.http = http or requests

    @classmethod
    def from_config(cls, config) -> "ChatAlerter":
        base = (config.get("APP_BASE_URL") or "http://localhost:5000").rstrip("/")
        return cls(
            dashboard_url=f"{base}/admin",
            timeout_seconds=config.get("CHAT_ALERT_TIMEOUT_SECONDS", 5.0),
        )

    def notify(self, org, response, text: str) -> bool:
        """Post the alert for one stored response. True when the channel accepted it."""
        url = org.chat_webhook_url
        if not url:
            return False
        platform = detect_platform(url)
        if platform is None:
            log_event(logger, "chat_alert_rejected_url", logging.WARNING, org_id=org.id)
            return False

        build = slack_payload if platform == PLATFORM_SLACK else discord_payload
        payload = build(org.name, response.sentiment, list(response.categories or []),
                        excerpt(text, PREVIEW_CHARS), self.dashboard_url)
        try:
            resp = self.http.post(url, json=payload, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            log_event(logger, "chat_alert_failed", logging.WARNING, org_id=org.id, platform=platform,
                      response_id=response.id, error=type(exc).__name__)
            return False
        if not resp.ok:
            log_event(logger, "chat_alert_failed", logging.WARNING, org_id=org.id, platform=platform,
                      response_id=response.id, status=resp.status_code)
            return False
        log_event(logger, "chat_alert_sent", org_id=org.id, platform=platform, response_id=response.id)
        return True
