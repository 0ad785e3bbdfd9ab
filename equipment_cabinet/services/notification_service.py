from __future__ import annotations

import json
import logging
import smtplib
import urllib.error
import urllib.request
from concurrent.futures import ThreadPoolExecutor
from email.message import EmailMessage
from typing import Any, Callable

from equipment_cabinet.services.eligibility_service import COUNTRY_PREFIX, normalize_phone
from equipment_cabinet.settings import (
    APP_URL,
    NOTIFICATION_WORKERS,
    PUSH_WEBHOOK_URL,
    SMTP_FROM,
    SMTP_HOST,
    SMTP_PASSWORD,
    SMTP_PORT,
    SMTP_USER,
    WHATSAPP_ACCESS_TOKEN,
    WHATSAPP_PHONE_NUMBER_ID,
)

logger = logging.getLogger(__name__)

WHATSAPP_API_URL = "https://graph.facebook.com/v18.0/{phone_number_id}/messages"
_HTTP_TIMEOUT_SECONDS = 15
_EXECUTOR = ThreadPoolExecutor(max_workers=NOTIFICATION_WORKERS, thread_name_prefix="cabinet-notify")


class NotificationError(RuntimeError):
    pass


def _post_json(url: str, payload: dict[str, Any], headers: dict[str, str] | None = None) -> dict[str, Any]:
    request = urllib.request.Request(
        url=url,
        data=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
        headers={"Content-Type": "application/json", **(headers or {})},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=_HTTP_TIMEOUT_SECONDS) as response:
            raw = response.read().decode("utf-8") or "{}"
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
        raise NotificationError(f"HTTP {exc.code}: {body[:200]}") from exc
    except urllib.error.URLError as exc:
        raise NotificationError(f"connection error: {exc.reason}") from exc
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class PushNotifier:
    def __init__(self, webhook_url: str = PUSH_WEBHOOK_URL):
        self.webhook_url = webhook_url

    def notify(self, city_id: int, title: str, body: str, url: str) -> None:
        if not self.webhook_url:
            logger.info("Push skipped city_id=%s reason=no_webhook", city_id)
            return
        _post_json(self.webhook_url, {"cityId": city_id, "title": title, "body": body, "url": url})


class EmailNotifier:
    """SMTP delivery for manager alerts.

    ``recipients_for_city`` maps a city id to the manager addresses; the app
    wires it to the Cities table so this class stays free of DB access.
    """

    def __init__(
        self,
        recipients_for_city: Callable[[int], list[str]] | None = None,
        host: str = SMTP_HOST,
        port: int = SMTP_PORT,
        user: str = SMTP_USER,
        password: str = SMTP_PASSWORD,
        sender: str = SMTP_FROM,
    ):
        self.recipients_for_city = recipients_for_city or (lambda city_id: [])
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender

    def _send(self, recipients: list[str], subject: str, text: str) -> None:
        if not self.host or not recipients:
            logger.info("Email skipped subject=%r reason=%s", subject, "no_smtp_host" if not self.host else "no_recipients")
            return
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.sender or self.user
        message["To"] = ", ".join(recipients)
        message.set_content(text)
        with smtplib.SMTP(self.host, self.port, timeout=_HTTP_TIMEOUT_SECONDS) as client:
            client.starttls()
            if self.user:
                client.login(self.user, self.password)
            client.send_message(message)

    def notify_managers(self, city_id: int, subject: str, items: list[dict]) -> None:
        lines = [f"- {item.get('name')} x{item.get('quantity', 1)}" for item in items]
        text = "\n".join([subject, "", *lines, "", f"{APP_URL}/city/{city_id}/admin"])
        self._send(self.recipients_for_city(city_id), subject, text)

    def notify_low_stock(self, manager_email: str | None, city_name: str, items: list[dict]) -> None:
        lines = [f"- {item.get('name')}: {item.get('quantity')} left (minimum {item.get('minQuantity')})" for item in items]
        subject = f"Low stock in {city_name}"
        self._send([manager_email] if manager_email else [], subject, "\n".join([subject, "", *lines]))


class MessagingClient:
    def __init__(self, access_token: str = WHATSAPP_ACCESS_TOKEN, phone_number_id: str = WHATSAPP_PHONE_NUMBER_ID):
        self.access_token = access_token
        self.phone_number_id = phone_number_id

    @staticmethod
    def format_phone(phone: str) -> str:
        cleaned = normalize_phone(phone)
        if cleaned.startswith("0"):
            cleaned = COUNTRY_PREFIX + cleaned[1:]
        if not cleaned.startswith(COUNTRY_PREFIX) and len(cleaned) == 9:
            cleaned = COUNTRY_PREFIX + cleaned
        return cleaned

    def send_overdue_reminder(
        self,
        phone: str,
        borrower_name: str,
        equipment_name: str,
        borrow_date_display: str,
        hours_overdue: int,
        city_name: str,
    ) -> dict[str, Any]:
        if not self.access_token or not self.phone_number_id:
            return {"success": False, "error": "WhatsApp service not configured"}
        text = (
            f"Hello {borrower_name},\n"
            f"{equipment_name} was borrowed from the {city_name} cabinet on {borrow_date_display} "
            f"and is {hours_overdue} hours overdue. Please return it as soon as possible."
        )
        payload = {
            "messaging_product": "whatsapp",
            "to": self.format_phone(phone),
            "type": "text",
            "text": {"body": text},
        }
        try:
            _post_json(
                WHATSAPP_API_URL.format(phone_number_id=self.phone_number_id),
                payload,
                headers={"Authorization": f"Bearer {self.access_token}"},
            )
        except NotificationError as exc:
            return {"success": False, "error": str(exc)}
        return {"success": True, "error": None}


class Notifier:
    """Push + email bundle whose sends never block or fail the caller."""

    def __init__(self, push: PushNotifier, email: EmailNotifier, executor: Any = None):
        self.push = push
        self.email = email
        self.executor = executor or _EXECUTOR

    def dispatch(self, fn: Callable[..., Any], *args: Any) -> None:
        try:
            self.executor.submit(self._run, fn, *args)
        except RuntimeError:
            logger.exception("Notification dispatch rejected fn=%s", getattr(fn, "__name__", fn))

    @staticmethod
    def _run(fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except Exception:
            logger.exception("Notification failed fn=%s", getattr(fn, "__qualname__", fn))
