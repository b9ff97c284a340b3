import os
import json

def _json_env(name: str, default):
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be valid JSON")

class BaseConfig:
    # Secrets (env in prod; dev/test may use defaults)
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-not-secure")
    WTF_CSRF_SECRET_KEY = SECRET_KEY
    WTF_CSRF_TIME_LIMIT = None

    # Database (env in prod; dev/test may use default)
    try:
        from dotenv import dotenv_values
        _ENV_FALLBACK = dotenv_values(".env")
    except Exception:
        _ENV_FALLBACK = {}
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or _ENV_FALLBACK.get("DATABASE_URL") or "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging / misc
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"

    # Flask-Limiter default: off globally; prefer per-route limits
    RATELIMIT_DEFAULT = None

    # --- Mail ---
    MAIL_SERVER = os.getenv("MAIL_SERVER", "localhost")
    MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
    MAIL_USE_TLS = (os.getenv("MAIL_USE_TLS", "true").lower() == "true")
    MAIL_USE_SSL = (os.getenv("MAIL_USE_SSL", "false").lower() == "true")
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "TellSafe <digest@tellsafe.local>")
    MAIL_SUPPRESS_SEND = (os.getenv("MAIL_SUPPRESS_SEND", "false").lower() == "true")

    # Used for absolute links in emails (must be https in prod)
    APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:5000")
    PRODUCT_NAME = os.getenv("PRODUCT_NAME", "TellSafe")

    # --- Webhooks ---
    EMAIL_WEBHOOK_SECRET = os.getenv("EMAIL_WEBHOOK_SECRET")
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    RELAY_ADDRESS_DOMAIN = os.getenv("RELAY_ADDRESS_DOMAIN", "tellsafe.app")

    # --- Encryption: {"<org slug>": "<64 hex chars>"}; supplied by key management ---
    ORG_ENCRYPTION_KEYS = _json_env("ORG_ENCRYPTION_KEYS", {})

    # --- Sentiment ---
    SENTIMENT_NEUTRAL_THRESHOLD = float(os.getenv("SENTIMENT_NEUTRAL_THRESHOLD", "0.05"))
    SENTIMENT_NORMALIZATION_ALPHA = float(os.getenv("SENTIMENT_NORMALIZATION_ALPHA", "15"))

    # --- Digest ---
    CRON_SECRET = os.getenv("CRON_SECRET")
    DIGEST_PERIOD_DAYS = int(os.getenv("DIGEST_PERIOD_DAYS", "7"))
    DIGEST_HIGHLIGHT_LIMIT = int(os.getenv("DIGEST_HIGHLIGHT_LIMIT", "3"))
    DIGEST_EXCERPT_CHARS = int(os.getenv("DIGEST_EXCERPT_CHARS", "280"))
    DIGEST_MAX_RETRIES = int(os.getenv("DIGEST_MAX_RETRIES", "3"))
    DIGEST_RETRY_BACKOFF_SECONDS = float(os.getenv("DIGEST_RETRY_BACKOFF_SECONDS", "0.5"))
    DIGEST_TOP_CATEGORIES = int(os.getenv("DIGEST_TOP_CATEGORIES", "5"))
    # A pending/building digest claimed longer ago than this was abandoned by a crashed run
    DIGEST_CLAIM_TIMEOUT_SECONDS = int(os.getenv("DIGEST_CLAIM_TIMEOUT_SECONDS", "900"))

    # --- Chat alerts (Slack / Discord incoming webhooks) ---
    CHAT_ALERT_TIMEOUT_SECONDS = float(os.getenv("CHAT_ALERT_TIMEOUT_SECONDS", "5"))

    # Token salt for digest opt-out links
    EMAIL_TOKEN_SALT = os.getenv("EMAIL_TOKEN_SALT", "digest-token-v1")

class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")
    SESSION_COOKIE_SECURE = False
    MAIL_SUPPRESS_SEND = True

class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING")
    SESSION_COOKIE_SECURE = True
    SESSION_COOKIE_SAMESITE = os.environ.get("SESSION_COOKIE_SAMESITE", "Lax")
    MAIL_SUPPRESS_SEND = False

    # REQUIRE env vars in production (fail fast if missing); read lazily so
    # importing this module never raises in dev/test
    @property
    def SECRET_KEY(self):
        return os.environ["SECRET_KEY"]

    @property
    def SQLALCHEMY_DATABASE_URI(self):
        return os.environ["DATABASE_URL"]

class TestingConfig(BaseConfig):
    TESTING = True
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    SESSION_COOKIE_SECURE = False
    MAIL_SUPPRESS_SEND = True
    DIGEST_RETRY_BACKOFF_SECONDS = 0.0

_ENV_MAP = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}

def get_config():
    env = os.environ.get("APP_ENV", "development").lower()
    cls = _ENV_MAP.get(env, DevelopmentConfig)
    # from_object on an instance resolves the production properties
    return cls() if cls is ProductionConfig else cls
