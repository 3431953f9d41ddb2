"""
Notification Engine Module

Fire-and-forget notifications for program lifecycle and payment events:
welcome, payment reminders, payment confirmations and approvals for
learners; new-program, payment-received, frozen and deleted alerts for
administrators. Delivery failures are logged and recorded, never raised
into the lifecycle or reconciliation code that triggered them.
"""

import asyncio
import logging
import smtplib
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from email.message import EmailMessage
from enum import Enum
from functools import partial
from typing import Any, Dict, List, Optional, Sequence, Set

import requests

from .config import EduPayConfig, get_config
from .money import format_amount
from .schedule import utcnow
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("edupay.notifications")


class NotificationType(Enum):
    """Types of notifications"""
    # Learner notifications
    WELCOME = "welcome"
    PAYMENT_REMINDER = "payment_reminder"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PROGRAM_APPROVED = "program_approved"

    # Administrator notifications
    NEW_PROGRAM = "new_program"
    PAYMENT_MADE = "payment_made"
    PROGRAM_FROZEN = "program_frozen"
    PROGRAM_DELETED = "program_deleted"

    @property
    def is_admin(self) -> bool:
        return self in ADMIN_NOTIFICATIONS


ADMIN_NOTIFICATIONS = frozenset({
    NotificationType.NEW_PROGRAM,
    NotificationType.PAYMENT_MADE,
    NotificationType.PROGRAM_FROZEN,
    NotificationType.PROGRAM_DELETED,
})


class NotificationChannel(Enum):
    """Available notification channels"""
    EMAIL = "email"
    WEBHOOK = "webhook"
    LOG = "log"


class NotificationStatus(Enum):
    """Status of notifications"""
    SENT = "sent"
    FAILED = "failed"


@dataclass(frozen=True)
class NotificationTemplate:
    """Subject/body pair with {placeholders} filled from the event payload"""
    notification_type: NotificationType
    subject_template: str
    body_template: str


DEFAULT_TEMPLATES: Dict[NotificationType, NotificationTemplate] = {
    NotificationType.WELCOME: NotificationTemplate(
        NotificationType.WELCOME,
        "Welcome to EduPay, {user_name}!",
        "Hi {user_name},\n\nWelcome aboard. Register a program from your dashboard; "
        "once an administrator approves it you can start paying on your chosen schedule."
    ),
    NotificationType.PAYMENT_REMINDER: NotificationTemplate(
        NotificationType.PAYMENT_REMINDER,
        "Payment Reminder: {program_name} - {amount}",
        "This is a friendly reminder that a payment of {amount} for {program_name} "
        "is due on {due_date}.\n\nPlease make your payment to keep your program active."
    ),
    NotificationType.PAYMENT_CONFIRMED: NotificationTemplate(
        NotificationType.PAYMENT_CONFIRMED,
        "Payment Confirmed - {program_name}",
        "Hi {user_name},\n\nWe received your payment of {amount} for {program_name}.\n"
        "Reference: {reference}"
    ),
    NotificationType.PROGRAM_APPROVED: NotificationTemplate(
        NotificationType.PROGRAM_APPROVED,
        "Program Approved - {program_name} | Start Making Payments",
        "Hi {user_name},\n\nYour program {program_name} has been approved. "
        "Your first payment is {amount}."
    ),
    NotificationType.NEW_PROGRAM: NotificationTemplate(
        NotificationType.NEW_PROGRAM,
        "New Program Awaiting Approval - {program_name}",
        "{user_name} ({user_email}) registered {program_name}. "
        "It is waiting for approval before payments can start."
    ),
    NotificationType.PAYMENT_MADE: NotificationTemplate(
        NotificationType.PAYMENT_MADE,
        "Payment Received - {program_name}",
        "{user_name} ({user_email}) paid {amount} for {program_name}.\n"
        "Reference: {reference}"
    ),
    NotificationType.PROGRAM_FROZEN: NotificationTemplate(
        NotificationType.PROGRAM_FROZEN,
        "Program Frozen - {program_name}",
        "{program_name} for {user_name} ({user_email}) was frozen due to a missed "
        "payment on {missed_payment_date}."
    ),
    NotificationType.PROGRAM_DELETED: NotificationTemplate(
        NotificationType.PROGRAM_DELETED,
        "Program Deleted - {program_name}",
        "{program_name} for {user_name} ({user_email}) was deleted. {reason}"
    ),
}


@dataclass
class Notification(StorageRecord):
    """Individual notification instance"""
    notification_type: NotificationType
    channel: NotificationChannel
    recipient_address: str
    subject: str
    body: str
    status: NotificationStatus = NotificationStatus.SENT
    sent_at: Optional[datetime] = None
    failed_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ChannelProvider(ABC):
    """Abstract base class for notification channel providers"""

    @abstractmethod
    async def send(self, notification: Notification) -> bool:
        """Send notification via this channel. Returns True if successful."""
        pass


class LogChannelProvider(ChannelProvider):
    """Logs notifications instead of delivering them (development default)"""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    async def send(self, notification: Notification) -> bool:
        self.log.info(
            f"{notification.notification_type.value} to {notification.recipient_address}: "
            f"{notification.subject}"
        )
        return True


class EmailChannelProvider(ChannelProvider):
    """SMTP email delivery"""

    def __init__(self, host: str, port: int = 587, username: str = "", password: str = "",
                 use_tls: bool = True, sender: str = "", timeout: float = 10.0):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.sender = sender or username
        self.timeout = timeout

    def _deliver(self, notification: Notification) -> None:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = notification.recipient_address
        message["Subject"] = notification.subject
        message.set_content(notification.body)

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password)
            smtp.send_message(message)

    async def send(self, notification: Notification) -> bool:
        await asyncio.to_thread(self._deliver, notification)
        return True


class WebhookChannelProvider(ChannelProvider):
    """Posts every notification as JSON to one configured URL"""

    def __init__(self, url: str, timeout: int = 10):
        self.url = url
        self.timeout = timeout

    def _post(self, notification: Notification) -> bool:
        payload = {
            "notification_id": notification.id,
            "type": notification.notification_type.value,
            "recipient": notification.recipient_address,
            "subject": notification.subject,
            "body": notification.body,
            "timestamp": notification.created_at.isoformat(),
            "metadata": notification.metadata
        }
        response = requests.post(
            self.url,
            json=payload,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        return response.status_code == 200

    async def send(self, notification: Notification) -> bool:
        return await asyncio.to_thread(self._post, notification)


def _display(value: Any, currency_code: str) -> Any:
    if isinstance(value, Decimal):
        return format_amount(value, currency_code)
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if value is None:
        return ""
    return value


def _metadata_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


class NotificationEngine:
    """
    Renders templates and dispatches notifications to channel providers.

    Learner notifications go to the address passed by the caller; admin
    notifications go to every configured admin address.
    """

    def __init__(
        self,
        storage: StorageInterface,
        admin_recipients: Sequence[str] = (),
        providers: Optional[Dict[NotificationChannel, ChannelProvider]] = None,
        currency_code: str = "NGN",
        enabled: bool = True
    ):
        self.storage = storage
        self.admin_recipients = list(admin_recipients)
        self.currency_code = currency_code
        self.enabled = enabled
        self.notifications_table = "notifications"
        self.templates: Dict[NotificationType, NotificationTemplate] = dict(DEFAULT_TEMPLATES)
        self.providers: Dict[NotificationChannel, ChannelProvider] = (
            providers if providers is not None else {NotificationChannel.LOG: LogChannelProvider()}
        )
        self._background: Set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, storage: StorageInterface, cfg: Optional[EduPayConfig] = None) -> 'NotificationEngine':
        """Wire providers from configuration: SMTP and webhook when configured, log otherwise"""
        cfg = cfg or get_config()
        providers: Dict[NotificationChannel, ChannelProvider] = {}
        if cfg.smtp_host:
            providers[NotificationChannel.EMAIL] = EmailChannelProvider(
                host=cfg.smtp_host,
                port=cfg.smtp_port,
                username=cfg.smtp_user,
                password=cfg.smtp_password,
                use_tls=cfg.smtp_use_tls,
                sender=cfg.email_from,
                timeout=cfg.notification_timeout
            )
        if cfg.notification_webhook_url:
            providers[NotificationChannel.WEBHOOK] = WebhookChannelProvider(
                cfg.notification_webhook_url, timeout=cfg.notification_timeout
            )
        if not providers:
            providers[NotificationChannel.LOG] = LogChannelProvider()
        return cls(
            storage,
            admin_recipients=cfg.admin_emails,
            providers=providers,
            currency_code=cfg.currency_code,
            enabled=cfg.enable_notifications
        )

    def register_provider(self, channel: NotificationChannel, provider: ChannelProvider) -> None:
        self.providers[channel] = provider

    def render(self, notification_type: NotificationType, data: Dict[str, Any]) -> tuple:
        """Render (subject, body); raises KeyError when the payload misses a placeholder"""
        template = self.templates[notification_type]
        context = {key: _display(value, self.currency_code) for key, value in data.items()}
        return (
            template.subject_template.format(**context),
            template.body_template.format(**context)
        )

    async def send_notification(
        self,
        notification_type: NotificationType,
        recipients: Sequence[str],
        data: Dict[str, Any]
    ) -> List[Notification]:
        """Render once and deliver to each recipient over every provider"""
        subject, body = self.render(notification_type, data)
        metadata = {key: _metadata_value(value) for key, value in data.items()}

        sent = []
        for recipient in recipients:
            for channel, provider in self.providers.items():
                now = utcnow()
                notification = Notification(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    notification_type=notification_type,
                    channel=channel,
                    recipient_address=recipient,
                    subject=subject,
                    body=body,
                    metadata=metadata
                )
                try:
                    if await provider.send(notification):
                        notification.sent_at = now
                    else:
                        notification.status = NotificationStatus.FAILED
                        notification.failed_reason = "Provider send failed"
                except Exception as e:
                    notification.status = NotificationStatus.FAILED
                    notification.failed_reason = str(e)
                    logger.warning(
                        f"{channel.value} delivery of {notification_type.value} to {recipient} failed: {e}"
                    )

                self.storage.save(self.notifications_table, notification.id, notification.to_dict())
                sent.append(notification)
        return sent

    def notify(
        self,
        notification_type: NotificationType,
        data: Dict[str, Any],
        recipient: Optional[str] = None
    ) -> List[Notification]:
        """
        Fire-and-forget entry point used by the engine.

        Never raises: rendering, delivery and bookkeeping failures are
        logged and an empty list (or the failed records) is returned.
        Inside a running event loop the delivery is scheduled as a task on
        that loop and an empty list is returned straight away.
        """
        if not self.enabled:
            return []

        if notification_type.is_admin:
            recipients = self.admin_recipients
        else:
            recipients = [recipient] if recipient else []

        if not recipients:
            logger.info(f"No recipients for {notification_type.value}; skipping")
            return []

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            # Called from async code: deliver on the caller's loop instead of
            # nesting a second one.
            task = loop.create_task(self.send_notification(notification_type, recipients, data))
            self._background.add(task)
            task.add_done_callback(partial(self._finish_background, notification_type))
            return []

        try:
            return asyncio.run(self.send_notification(notification_type, recipients, data))
        except Exception as e:
            logger.error(f"Failed to send {notification_type.value} notification: {e}")
            return []

    def _finish_background(self, notification_type: NotificationType, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            logger.warning(f"Delivery of {notification_type.value} notification was cancelled")
        elif task.exception() is not None:
            logger.error(f"Failed to send {notification_type.value} notification: {task.exception()}")

    def get_notifications(self, notification_type: Optional[NotificationType] = None) -> List[Notification]:
        """Stored notification records, oldest first"""
        filters = {"notification_type": notification_type.value} if notification_type else {}
        records = [self._notification_from_dict(data)
                   for data in self.storage.find(self.notifications_table, filters)]
        records.sort(key=lambda n: n.created_at)
        return records

    def get_delivery_stats(self) -> Dict[str, int]:
        """Counts of sent and failed notifications"""
        stats = {status.value: 0 for status in NotificationStatus}
        for data in self.storage.load_all(self.notifications_table):
            stats[data['status']] = stats.get(data['status'], 0) + 1
        return stats

    def _notification_from_dict(self, data: Dict[str, Any]) -> Notification:
        return Notification(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            notification_type=NotificationType(data['notification_type']),
            channel=NotificationChannel(data['channel']),
            recipient_address=data['recipient_address'],
            subject=data['subject'],
            body=data['body'],
            status=NotificationStatus(data['status']),
            sent_at=datetime.fromisoformat(data['sent_at']) if data.get('sent_at') else None,
            failed_reason=data.get('failed_reason'),
            metadata=data.get('metadata', {})
        )
