"""
Notification Module

In-app notifications created as side effects of settlement, and the email
senders used by the overdue sweep.

Delivery itself is an external concern: NotificationCenter only records the
message for the addressed user, and EmailSender implementations either log
the email (development) or hand it to an SMTP server.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from enum import Enum
from abc import ABC, abstractmethod
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
import smtplib
import uuid

from .storage import StorageInterface, StorageRecord
from .errors import NotFoundError
from .logging_config import get_logger


class NotificationType(Enum):
    PAYMENT_PROOF_SUBMITTED = "PAYMENT_PROOF_SUBMITTED"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    PAYMENT_DISPUTED = "PAYMENT_DISPUTED"
    PAYMENT_AWAITING_CONFIRMATION = "PAYMENT_AWAITING_CONFIRMATION"
    TRANSFER_REQUIRED = "TRANSFER_REQUIRED"
    LOAN_FUNDED = "LOAN_FUNDED"
    LOAN_COMPLETED = "LOAN_COMPLETED"
    GENERAL = "GENERAL"


@dataclass
class Notification(StorageRecord):
    """User-addressed, loan-linked message"""
    user_id: str
    loan_id: Optional[str]
    notification_type: NotificationType
    message: str
    is_read: bool = False


class NotificationCenter:
    """Append-only store of in-app notifications"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.notifications_table = "notifications"

    def create(
        self,
        user_id: str,
        loan_id: Optional[str],
        notification_type: NotificationType,
        message: str
    ) -> Notification:
        now = datetime.now(timezone.utc)
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            loan_id=loan_id,
            notification_type=notification_type,
            message=message
        )
        self._save_notification(notification)
        return notification

    def create_many(self, entries: List[Tuple[str, Optional[str], NotificationType, str]]) -> List[Notification]:
        """Create several notifications as one write scope"""
        with self.storage.atomic():
            return [self.create(*entry) for entry in entries]

    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[Notification]:
        """Notifications for a user, newest first"""
        filters = {"user_id": user_id}
        if unread_only:
            filters["is_read"] = False
        notifications = [self._notification_from_dict(d)
                         for d in self.storage.find(self.notifications_table, filters)]
        notifications.sort(key=lambda n: n.created_at, reverse=True)
        return notifications

    def list_for_loan(self, loan_id: str) -> List[Notification]:
        notifications = [self._notification_from_dict(d)
                         for d in self.storage.find(self.notifications_table, {"loan_id": loan_id})]
        notifications.sort(key=lambda n: n.created_at)
        return notifications

    def mark_read(self, notification_id: str, user_id: str) -> Notification:
        """Mark a notification read; only its addressee may do so"""
        data = self.storage.load(self.notifications_table, notification_id)
        if not data or data.get("user_id") != user_id:
            raise NotFoundError("Notification not found")

        notification = self._notification_from_dict(data)
        if not notification.is_read:
            notification.is_read = True
            notification.updated_at = datetime.now(timezone.utc)
            self._save_notification(notification)
        return notification

    def unread_count(self, user_id: str) -> int:
        return len(self.storage.find(self.notifications_table, {"user_id": user_id, "is_read": False}))

    def _save_notification(self, notification: Notification) -> None:
        result = notification.to_dict()
        result["notification_type"] = notification.notification_type.value
        self.storage.save(self.notifications_table, notification.id, result)

    def _notification_from_dict(self, data: Dict) -> Notification:
        data = dict(data)
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        data["updated_at"] = datetime.fromisoformat(data["updated_at"])
        data["notification_type"] = NotificationType(data["notification_type"])
        return Notification(**data)


@dataclass
class EmailMessage:
    to: str
    subject: str
    text: str
    html: Optional[str] = None


class EmailSender(ABC):
    """Outbound email collaborator"""

    @abstractmethod
    def send(self, message: EmailMessage) -> bool:
        """Send an email. Returns True if it was handed off successfully."""
        pass


class LogEmailSender(EmailSender):
    """Logs emails instead of sending them; keeps the outbox for inspection"""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("microlend.notifications")
        self.outbox: List[EmailMessage] = []

    def send(self, message: EmailMessage) -> bool:
        self.outbox.append(message)
        self.logger.info(f"EMAIL to {message.to}: {message.subject}")
        return True


class SmtpEmailSender(EmailSender):
    """Sends multipart text/HTML email through an SMTP relay"""

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        from_address: str = "",
        use_tls: bool = True,
        timeout: float = 30.0
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_address = from_address or username
        self.use_tls = use_tls
        self.timeout = timeout
        self.logger = get_logger("microlend.notifications")

    def send(self, message: EmailMessage) -> bool:
        mime = MIMEMultipart("alternative")
        mime["Subject"] = message.subject
        mime["From"] = self.from_address
        mime["To"] = message.to
        mime.attach(MIMEText(message.text, "plain"))
        if message.html:
            mime.attach(MIMEText(message.html, "html"))

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password)
                server.sendmail(self.from_address, [message.to], mime.as_string())
            return True
        except (smtplib.SMTPException, OSError) as e:
            self.logger.error(f"Failed to send email to {message.to}: {e}")
            return False
