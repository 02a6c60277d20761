import os


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


class Settings:
    """Service configuration, read from environment variables."""

    def __init__(self):
        # Storage
        self.database_url = os.getenv("DATABASE_URL", "sqlite:///./orders.db")

        # Orders
        self.order_number_prefix = os.getenv("ORDER_NUMBER_PREFIX", "DD")
        self.orphan_order_minutes = _env_int("ORPHAN_ORDER_MINUTES", 15)
        self.admin_api_token = os.getenv("ADMIN_API_TOKEN", "")

        # Email provider (Resend-compatible API)
        self.email_api_url = os.getenv("EMAIL_API_URL", "https://api.resend.com").rstrip("/")
        self.email_api_key = os.getenv("EMAIL_API_KEY", "")
        self.from_email = os.getenv("FROM_EMAIL", "orders@dankdealsmn.com")
        self.admin_email = os.getenv("ADMIN_EMAIL", "admin@dankdealsmn.com")

        # SMS provider (Twilio-compatible API)
        self.sms_enabled = _env_bool("SMS_ENABLED")
        self.twilio_api_url = os.getenv("TWILIO_API_URL", "https://api.twilio.com").rstrip("/")
        self.twilio_account_sid = os.getenv("TWILIO_ACCOUNT_SID", "")
        self.twilio_auth_token = os.getenv("TWILIO_AUTH_TOKEN", "")
        self.twilio_phone_number = os.getenv("TWILIO_PHONE_NUMBER", "")

        # Templates
        self.store_name = os.getenv("STORE_NAME", "DankDeals")
        self.support_email = os.getenv("SUPPORT_EMAIL", "support@dankdealsmn.com")
        self.support_phone = os.getenv("SUPPORT_PHONE", "763-247-5378")
        self.admin_dashboard_url = os.getenv("ADMIN_DASHBOARD_URL", "https://dankdealsmn.com/admin/orders")

        # Webhooks and internal endpoints
        self.payment_provider = os.getenv("PAYMENT_PROVIDER", "stronghold")
        self.payment_webhook_secret = os.getenv("PAYMENT_WEBHOOK_SECRET", "")
        self.email_webhook_secret = os.getenv("EMAIL_WEBHOOK_SECRET", "")
        self.queue_processor_token = os.getenv("QUEUE_PROCESSOR_TOKEN", "")

        # Queue processing
        self.queue_batch_size = _env_int("QUEUE_BATCH_SIZE", 10)
        self.queue_concurrency = _env_int("QUEUE_CONCURRENCY", 3)
        self.queue_max_attempts = _env_int("QUEUE_MAX_ATTEMPTS", 3)
        self.queue_backoff_base_seconds = _env_float("QUEUE_BACKOFF_BASE_SECONDS", 1.0)
        self.queue_backoff_cap_seconds = _env_float("QUEUE_BACKOFF_CAP_SECONDS", 300.0)
        self.queue_stale_after_seconds = _env_int("QUEUE_STALE_AFTER_SECONDS", 300)
        self.queue_lease_seconds = _env_int("QUEUE_LEASE_SECONDS", 120)
        self.queue_retention_days = _env_int("QUEUE_RETENTION_DAYS", 30)
        self.queue_depth_threshold = _env_int("QUEUE_DEPTH_THRESHOLD", 100)

        # Provider guards
        self.rate_limit_capacity = _env_int("RATE_LIMIT_CAPACITY", 10)
        self.rate_limit_refill = _env_int("RATE_LIMIT_REFILL", 10)
        self.rate_limit_interval_seconds = _env_float("RATE_LIMIT_INTERVAL_SECONDS", 1.0)
        self.circuit_failure_threshold = _env_int("CIRCUIT_FAILURE_THRESHOLD", 6)
        self.circuit_failure_window_seconds = _env_float("CIRCUIT_FAILURE_WINDOW_SECONDS", 60.0)
        self.circuit_reset_seconds = _env_float("CIRCUIT_RESET_SECONDS", 30.0)
        self.provider_timeout_seconds = _env_float("PROVIDER_TIMEOUT_SECONDS", 10.0)
        self.provider_retry_attempts = _env_int("PROVIDER_RETRY_ATTEMPTS", 3)
        self.provider_retry_initial_delay = _env_float("PROVIDER_RETRY_INITIAL_DELAY", 1.0)

        # Domain events (RabbitMQ)
        self.events_enabled = _env_bool("EVENTS_ENABLED")
        self.rabbitmq_host = os.getenv("RABBITMQ_HOST", "rabbitmq")
        self.rabbitmq_exchange = os.getenv("RABBITMQ_EXCHANGE", "events")

        self.log_level = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
