import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")
# Services read these when the app is built
os.environ.setdefault("EMAIL_WEBHOOK_SECRET", "testsecret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_x")
os.environ.setdefault("CRON_SECRET", "cron-test-secret")

from types import SimpleNamespace

import pytest
from tellsafe import create_app
from tellsafe.extensions import db
from tellsafe.models import Organization, OrgMember, Survey, ROLE_OWNER

ACME_KEY_HEX = "0f1e2d3c4b5a69788796a5b4c3d2e1f00f1e2d3c4b5a69788796a5b4c3d2e1f0"

@pytest.fixture(scope="session")
def app():
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "MAIL_SUPPRESS_SEND": True,
        "APP_BASE_URL": "http://example.test",
        "WTF_CSRF_ENABLED": False,
        "RATELIMIT_ENABLED": False,
        "APP_ENV": "test",
        "EMAIL_WEBHOOK_SECRET": os.environ.get("EMAIL_WEBHOOK_SECRET", "testsecret"),
        "STRIPE_WEBHOOK_SECRET": os.environ.get("STRIPE_WEBHOOK_SECRET", "whsec_test_x"),
        "CRON_SECRET": os.environ.get("CRON_SECRET", "cron-test-secret"),
        "ORG_ENCRYPTION_KEYS": {"acme": ACME_KEY_HEX},
        "DIGEST_RETRY_BACKOFF_SECONDS": 0.0,
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()

@pytest.fixture()
def client(app):
    return app.test_client()

@pytest.fixture()
def acme_key():
    return bytes.fromhex(ACME_KEY_HEX)

@pytest.fixture()
def acme(app):
    """Active org with one digest recipient and a published single-question survey."""
    with app.app_context():
        org = Organization(slug="acme", name="Acme Co")
        db.session.add(org)
        db.session.flush()
        db.session.add(OrgMember(org_id=org.id, email="owner@acme.test", role=ROLE_OWNER))
        survey = Survey(
            org_id=org.id,
            title="Team pulse",
            questions=[{"key": "comment", "prompt": "Anything to share?", "kind": "text"}],
        )
        db.session.add(survey)
        db.session.flush()
        survey.publish()
        db.session.commit()
        return SimpleNamespace(org_id=org.id, survey_id=survey.id, slug=org.slug)

@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
