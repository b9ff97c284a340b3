"""
Explicitly constructed collaborators for the feedback core.

create_app() builds one ``Services`` bundle per app and stores it under
``app.extensions["tellsafe"]``; blueprints and CLI commands fetch it with
``get_services()`` instead of reaching for module-level clients.
"""
import time
from dataclasses import dataclass
from typing import Any

from flask import current_app

EXTENSION_KEY = "tellsafe"


@dataclass
class Services:
    key_provider: Any
    tagger: Any
    webhooks: Any
    digest_builder: Any
    dispatcher: Any
    alerter: Any


def build_services(app, *, session, mailer, sleep=time.sleep) -> Services:
    from .alerts import ChatAlerter
    from .crypto import OrgKeyProvider
    from .digest import DigestBuilder
    from .notifications import NotificationDispatcher
    from .sentiment import SentimentTagger
    from .webhooks import WebhookNormalizer

    config = app.config
    key_provider = OrgKeyProvider.from_config(config)
    tagger = SentimentTagger.from_config(config)
    return Services(
        key_provider=key_provider,
        tagger=tagger,
        webhooks=WebhookNormalizer.from_config(config, session=session, key_provider=key_provider),
        digest_builder=DigestBuilder.from_config(config, session=session, key_provider=key_provider, tagger=tagger),
        dispatcher=NotificationDispatcher.from_config(
            config, mailer=mailer, session=session, key_provider=key_provider, sleep=sleep
        ),
        alerter=ChatAlerter.from_config(config),
    )


def init_services(app, *, session, mailer) -> Services:
    services = build_services(app, session=session, mailer=mailer)
    app.extensions[EXTENSION_KEY] = services
    return services


def get_services() -> Services:
    return current_app.extensions[EXTENSION_KEY]
