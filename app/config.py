import os


def _bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


_DEV_SECRET = "dev-secret-rfq-approvals"


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_DIR = None if DATABASE_URL else os.path.join(BASE_DIR, "database")
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "rfq_approvals.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", True)

    SECRET_KEY = os.environ.get("SECRET_KEY", _DEV_SECRET)
    JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY")
    QUOTE_TOKEN_TTL_SECONDS = _int_env("QUOTE_TOKEN_TTL_SECONDS", 7 * 24 * 3600)
    APPROVAL_TOKEN_TTL_SECONDS = _int_env("APPROVAL_TOKEN_TTL_SECONDS", 3 * 24 * 3600)

    AUTH_ENABLED = _bool_env("AUTH_ENABLED", True)
    APP_USERS = os.environ.get("APP_USERS", "admin@demo.com:admin123:tenant-demo:Admin:admin")

    PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:5000")
    MAIL_SERVER = os.environ.get("MAIL_SERVER")
    MAIL_PORT = _int_env("MAIL_PORT", 587)
    MAIL_USE_TLS = _bool_env("MAIL_USE_TLS", True)
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.environ.get("MAIL_DEFAULT_SENDER", "noreply@rfq-approvals.local")
    MAIL_TIMEOUT_SECONDS = _int_env("MAIL_TIMEOUT_SECONDS", 15)

    NOTIFICATION_SEND_CONCURRENCY = _int_env("NOTIFICATION_SEND_CONCURRENCY", 4)
    NOTIFICATION_OUTBOX_MAX_ATTEMPTS = _int_env("NOTIFICATION_OUTBOX_MAX_ATTEMPTS", 5)
    NOTIFICATION_OUTBOX_MIN_BACKOFF_SECONDS = _int_env("NOTIFICATION_OUTBOX_MIN_BACKOFF_SECONDS", 30)
    NOTIFICATION_OUTBOX_MAX_BACKOFF_SECONDS = _int_env("NOTIFICATION_OUTBOX_MAX_BACKOFF_SECONDS", 1800)
    NOTIFICATION_OUTBOX_BACKOFF_JITTER_RATIO = float(os.environ.get("NOTIFICATION_OUTBOX_BACKOFF_JITTER_RATIO", "0.25"))
    NOTIFICATION_OUTBOX_BATCH_SIZE = _int_env("NOTIFICATION_OUTBOX_BATCH_SIZE", 50)
    NOTIFICATION_OUTBOX_WORKER_INTERVAL_SECONDS = _int_env("NOTIFICATION_OUTBOX_WORKER_INTERVAL_SECONDS", 10)

    # fail closed: "require_approval" | "permissive"
    MODIFICATION_UNKNOWN_FIELD_POLICY = os.environ.get("MODIFICATION_UNKNOWN_FIELD_POLICY", "require_approval")
    RFQ_PAUSE_REQUIRES_APPROVAL = _bool_env("RFQ_PAUSE_REQUIRES_APPROVAL", False)

    APPROVAL_SCHEDULER_ENABLED = _bool_env("APPROVAL_SCHEDULER_ENABLED", True)
    APPROVAL_SCHEDULER_INTERVAL_SECONDS = _int_env("APPROVAL_SCHEDULER_INTERVAL_SECONDS", 300)
    APPROVAL_SCHEDULER_MIN_BACKOFF_SECONDS = _int_env("APPROVAL_SCHEDULER_MIN_BACKOFF_SECONDS", 30)
    APPROVAL_SCHEDULER_MAX_BACKOFF_SECONDS = _int_env("APPROVAL_SCHEDULER_MAX_BACKOFF_SECONDS", 600)

    RATE_LIMIT_ENABLED = _bool_env("RATE_LIMIT_ENABLED", True)
    RATE_LIMIT_WINDOW_SECONDS = _int_env("RATE_LIMIT_WINDOW_SECONDS", 60)
    RATE_LIMIT_MAX_REQUESTS = _int_env("RATE_LIMIT_MAX_REQUESTS", 600)
    RATE_LIMIT_LOGIN_MAX_REQUESTS = _int_env("RATE_LIMIT_LOGIN_MAX_REQUESTS", 20)
    RATE_LIMIT_TOKEN_MAX_REQUESTS = _int_env("RATE_LIMIT_TOKEN_MAX_REQUESTS", 60)
    SECURITY_HEADERS_ENABLED = _bool_env("SECURITY_HEADERS_ENABLED", True)

    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is not set for the production environment.")
        if env == "production" and self.SECRET_KEY == _DEV_SECRET:
            raise RuntimeError("SECRET_KEY is insecure for production.")
