import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

SANDBOX_BASE_URL = "https://cybqa.pesapal.com/pesapalv3"
PRODUCTION_BASE_URL = "https://pay.pesapal.com/v3"

PLACEHOLDER_CREDENTIALS = {"your_consumer_key_here", "your_consumer_secret_here"}


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


@dataclass(frozen=True)
class ReminderPolicy:
    # minimum gap before a 3-day reminder may be sent again
    resend_guard: timedelta = timedelta(hours=1)
    # a 7-day reminder is sent again once the last one is this old
    seven_day_resend: timedelta = timedelta(days=4)
    thresholds: tuple = (3, 7)


@dataclass(frozen=True)
class GatewayConfig:
    consumer_key: str = ""
    consumer_secret: str = ""
    notification_id: str = ""
    app_url: str = "http://localhost:8000"
    sandbox: bool = True
    base_url_override: str = ""
    default_currency: str = "KES"
    redirect_mode: str = "PARENT_WINDOW"
    verify_tls: bool = True
    timeout: float = 30.0
    trust_confirmation_code: bool = True
    reminders: ReminderPolicy = field(default_factory=ReminderPolicy)

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        return cls(
            consumer_key=os.getenv("PESAPAL_CONSUMER_KEY", ""),
            consumer_secret=os.getenv("PESAPAL_CONSUMER_SECRET", ""),
            notification_id=os.getenv("PESAPAL_NOTIFICATION_ID", ""),
            app_url=os.getenv("APP_URL", "http://localhost:8000"),
            sandbox=_env_bool("PESAPAL_SANDBOX", True),
            base_url_override=os.getenv("PESAPAL_BASE_URL", ""),
            default_currency=os.getenv("PESAPAL_DEFAULT_CURRENCY", "KES"),
            redirect_mode=os.getenv("PESAPAL_REDIRECT_MODE", "PARENT_WINDOW"),
            verify_tls=_env_bool("PESAPAL_VERIFY_TLS", True),
            timeout=float(os.getenv("PESAPAL_TIMEOUT", "30")),
            trust_confirmation_code=_env_bool("PESAPAL_TRUST_CONFIRMATION_CODE", True),
            reminders=ReminderPolicy(
                resend_guard=timedelta(minutes=_env_int("REMINDER_RESEND_GUARD_MINUTES", 60)),
                seven_day_resend=timedelta(days=_env_int("REMINDER_SEVEN_DAY_RESEND_DAYS", 4)),
            ),
        )

    @property
    def base_url(self) -> str:
        if self.base_url_override:
            return self.base_url_override.rstrip("/")
        return SANDBOX_BASE_URL if self.sandbox else PRODUCTION_BASE_URL

    @property
    def has_credentials(self) -> bool:
        if not self.consumer_key or not self.consumer_secret:
            return False
        return not (
            self.consumer_key in PLACEHOLDER_CREDENTIALS
            or self.consumer_secret in PLACEHOLDER_CREDENTIALS
        )

    @property
    def ipn_url(self) -> str:
        return self.app_url.rstrip("/") + "/api/pesapal/callback"

    @property
    def confirmation_url(self) -> str:
        return self.app_url.rstrip("/") + "/api/pesapal/confirm"


def get_config() -> GatewayConfig:
    return GatewayConfig.from_env()
