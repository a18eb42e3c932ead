import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        auth_secret: str,
        notify_provider: str,
        mail_from: str,
        resend_api_key: Optional[str],
        smtp_host: Optional[str],
        smtp_port: int,
        smtp_username: Optional[str],
        smtp_password: Optional[str],
        smtp_starttls: bool,
        notify_timeout_secs: float,
        app_url: str,
        currency_code: str,
        alert_hour: int,
        alert_minute: int,
        sweep_workers: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.auth_secret = auth_secret
        self.notify_provider = notify_provider
        self.mail_from = mail_from
        self.resend_api_key = resend_api_key
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_username = smtp_username
        self.smtp_password = smtp_password
        self.smtp_starttls = smtp_starttls
        self.notify_timeout_secs = notify_timeout_secs
        self.app_url = app_url
        self.currency_code = currency_code
        self.alert_hour = alert_hour
        self.alert_minute = alert_minute
        self.sweep_workers = sweep_workers


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    return Settings(
        database_url=os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}"),
        timezone=os.getenv("FINANCE_TIMEZONE", "America/Sao_Paulo"),
        auth_secret=os.getenv(
            "FINANCE_AUTH_SECRET",
            "4f1c9be0d27a8e35c6b0a1f9d8e7c2b3a4f5e6d7c8b9a0f1e2d3c4b5a6f7e8d9",
        ),
        notify_provider=os.getenv("FINANCE_NOTIFY_PROVIDER", "none").strip().lower(),
        mail_from=os.getenv("FINANCE_MAIL_FROM", "noreply@localhost"),
        resend_api_key=os.getenv("FINANCE_RESEND_API_KEY") or None,
        smtp_host=os.getenv("FINANCE_SMTP_HOST") or None,
        smtp_port=int(os.getenv("FINANCE_SMTP_PORT", "587")),
        smtp_username=os.getenv("FINANCE_SMTP_USERNAME") or None,
        smtp_password=os.getenv("FINANCE_SMTP_PASSWORD") or None,
        smtp_starttls=_env_flag("FINANCE_SMTP_STARTTLS", "true"),
        notify_timeout_secs=float(os.getenv("FINANCE_NOTIFY_TIMEOUT_SECS", "10")),
        app_url=os.getenv("FINANCE_APP_URL", "http://localhost:8000").rstrip("/"),
        currency_code=os.getenv("FINANCE_CURRENCY_CODE", "BRL").upper(),
        alert_hour=int(os.getenv("FINANCE_ALERT_HOUR", "8")),
        alert_minute=int(os.getenv("FINANCE_ALERT_MINUTE", "0")),
        sweep_workers=max(1, int(os.getenv("FINANCE_SWEEP_WORKERS", "1"))),
    )
