from __future__ import annotations

import json
import logging
import smtplib
from dataclasses import dataclass
from datetime import date, datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Optional, Protocol
from urllib.error import URLError
from urllib.request import Request, urlopen
from zoneinfo import ZoneInfo

from jinja2 import Environment, FileSystemLoader, select_autoescape

from alerts import AlertLevel, BudgetAlert
from config import Settings, get_settings
from models import BudgetPeriod


logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates" / "email"
RESEND_ENDPOINT = "https://api.resend.com/emails"

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


class DeliveryFailure(RuntimeError):
    pass


@dataclass(frozen=True)
class DeliveryResult:
    delivered: bool
    provider: str
    message_id: Optional[str] = None
    detail: Optional[str] = None


class NotificationSink(Protocol):
    def send(self, to: str, subject: str, html: str, text: str) -> DeliveryResult:
        ...


class LoggingSink:
    """Stand-in used when no transport is configured; never raises."""

    provider = "none"

    def send(self, to: str, subject: str, html: str, text: str) -> DeliveryResult:
        logger.warning(
            f"notify_skipped: provider={self.provider} to={to} subject={subject!r}"
        )
        return DeliveryResult(
            delivered=False,
            provider=self.provider,
            detail="Notification sink not configured",
        )


class SMTPSink:
    provider = "smtp"

    def __init__(
        self,
        host: str,
        port: int,
        mail_from: str,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
        starttls: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.mail_from = mail_from
        self.username = username
        self.password = password
        self.starttls = starttls
        self.timeout = timeout

    def send(self, to: str, subject: str, html: str, text: str) -> DeliveryResult:
        msg = MIMEMultipart("alternative")
        msg["From"] = self.mail_from
        msg["To"] = to
        msg["Subject"] = subject
        msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.starttls:
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password or "")
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryFailure(f"SMTP delivery to {to} failed: {exc}") from exc
        logger.info(f"notify_sent: provider=smtp to={to} subject={subject!r}")
        return DeliveryResult(delivered=True, provider=self.provider)


class ResendSink:
    provider = "resend"

    def __init__(self, api_key: str, mail_from: str, *, timeout: float = 10.0) -> None:
        self.api_key = api_key
        self.mail_from = mail_from
        self.timeout = timeout

    def send(self, to: str, subject: str, html: str, text: str) -> DeliveryResult:
        body = json.dumps(
            {
                "from": self.mail_from,
                "to": [to],
                "subject": subject,
                "html": html,
                "text": text,
            }
        ).encode("utf-8")
        req = Request(
            RESEND_ENDPOINT,
            data=body,
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                payload = json.loads(resp.read().decode("utf-8") or "{}")
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise DeliveryFailure(f"Resend delivery to {to} failed") from exc

        message_id = payload.get("id") if isinstance(payload, dict) else None
        logger.info(
            f"notify_sent: provider=resend to={to} subject={subject!r} id={message_id}"
        )
        return DeliveryResult(
            delivered=True, provider=self.provider, message_id=message_id
        )


def build_sink(settings: Optional[Settings] = None) -> NotificationSink:
    settings = settings or get_settings()
    provider = settings.notify_provider
    if provider == "smtp":
        if settings.smtp_host:
            return SMTPSink(
                settings.smtp_host,
                settings.smtp_port,
                settings.mail_from,
                username=settings.smtp_username,
                password=settings.smtp_password,
                starttls=settings.smtp_starttls,
                timeout=settings.notify_timeout_secs,
            )
        logger.warning("notify_config: provider=smtp but FINANCE_SMTP_HOST is unset")
    elif provider == "resend":
        if settings.resend_api_key:
            return ResendSink(
                settings.resend_api_key,
                settings.mail_from,
                timeout=settings.notify_timeout_secs,
            )
        logger.warning(
            "notify_config: provider=resend but FINANCE_RESEND_API_KEY is unset"
        )
    elif provider not in ("", "none"):
        logger.warning(f"notify_config: unknown provider={provider}")
    return LoggingSink()


@dataclass(frozen=True)
class AlertStyle:
    emoji: str
    color: str
    title: str


ALERT_STYLES = {
    AlertLevel.warning: AlertStyle("⚠️", "#f59e0b", "Heads up: budget on alert"),
    AlertLevel.danger: AlertStyle(
        "🚨", "#ef4444", "Urgent: budget at critical level"
    ),
    AlertLevel.exceeded: AlertStyle("❌", "#dc2626", "Alert: budget exceeded"),
}

PERIOD_LABELS = {
    BudgetPeriod.weekly: "Weekly",
    BudgetPeriod.monthly: "Monthly",
    BudgetPeriod.yearly: "Yearly",
    BudgetPeriod.custom: "Custom",
}


@dataclass(frozen=True)
class AlertMessage:
    subject: str
    html: str
    text: str


def format_currency(cents: int, currency_code: str = "BRL") -> str:
    amount = f"{cents / 100:,.2f}".replace(",", " ").replace(".", ",")
    return f"{currency_code} {amount}"


def format_budget_period(
    period: BudgetPeriod, start: date, end: Optional[date] = None
) -> str:
    label = PERIOD_LABELS.get(period, str(period))
    start_label = start.strftime("%d/%m/%Y")
    end_label = end.strftime("%d/%m/%Y") if end else "current"
    return f"{label} ({start_label} - {end_label})"


def render_budget_alert(
    alert: BudgetAlert,
    *,
    user_name: Optional[str] = None,
    currency_code: Optional[str] = None,
    app_url: Optional[str] = None,
) -> AlertMessage:
    if alert.level == AlertLevel.safe:
        raise ValueError("Budgets within limits do not produce alerts")
    settings = get_settings()
    currency_code = currency_code or settings.currency_code
    app_url = (app_url or settings.app_url).rstrip("/")
    style = ALERT_STYLES[alert.level]
    budget = alert.budget

    def money(cents: int) -> str:
        return format_currency(cents, currency_code)

    if alert.level == AlertLevel.exceeded:
        message = (
            f"You have exceeded your budget by {money(abs(alert.remaining_cents))}"
        )
    else:
        message = f"You have spent {alert.percentage:.0f}% of your budget"

    subject = f"{style.emoji} {style.title} - {budget.name}"
    context = {
        "subject": subject,
        "style": style,
        "greeting": f"Hello {user_name}" if user_name else "Hello",
        "message": message,
        "budget_name": budget.name,
        "category_name": budget.category.name if budget.category else "",
        "period_label": format_budget_period(
            budget.period, alert.window.start, alert.window.end
        ),
        "spent": money(alert.spent_cents),
        "limit": money(budget.amount_cents),
        "percentage": f"{alert.percentage:.1f}",
        "bar_width": f"{min(alert.percentage, 100):.1f}",
        "has_remaining": alert.remaining_cents > 0,
        "remaining": money(abs(alert.remaining_cents)),
        "show_tip": alert.level in (AlertLevel.danger, AlertLevel.exceeded),
        "budgets_url": f"{app_url}/budgets",
    }
    return AlertMessage(
        subject=subject,
        html=_env.get_template("budget_alert.html").render(**context),
        text=_env.get_template("budget_alert.txt").render(**context),
    )


def send_test_email(
    sink: NotificationSink,
    to: str,
    *,
    user_name: Optional[str] = None,
    app_url: Optional[str] = None,
    sent_at: Optional[datetime] = None,
) -> DeliveryResult:
    """Send a fixed message through ``sink`` to check the configured transport.

    Delivery errors are not caught here; callers decide how to report them.
    """
    if not to:
        raise ValueError("A recipient address is required")
    settings = get_settings()
    app_url = (app_url or settings.app_url).rstrip("/")
    sent_at = sent_at or datetime.now(ZoneInfo(settings.timezone))
    subject = "✅ Test e-mail from Finance Ledger"
    context = {
        "subject": subject,
        "greeting": f"Hello {user_name}" if user_name else "Hello",
        "provider": getattr(sink, "provider", "unknown"),
        "sent_at": sent_at.strftime("%d/%m/%Y %H:%M"),
        "app_url": app_url,
    }
    html = _env.get_template("test_email.html").render(**context)
    text = _env.get_template("test_email.txt").render(**context)
    result = sink.send(to, subject, html, text)
    logger.info(
        f"notify_test: provider={result.provider} to={to} "
        f"delivered={result.delivered}"
    )
    return result
