"""
In-app notifications and transactional email.

Both sinks are fire-and-forget: a delivery failure is logged and never
bubbles up into the operation that triggered it.
"""
import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Dict, List, Optional

from pymongo.database import Database

import config
from database import create_document
from schemas import Notifications, Role

logger = logging.getLogger(__name__)


class EmailSink:
    def __init__(self, host: Optional[str] = None, port: int = 25, sender: str = config.EMAIL_FROM):
        self.host = host
        self.port = port
        self.sender = sender

    @classmethod
    def from_env(cls) -> "EmailSink":
        return cls(config.SMTP_HOST, config.SMTP_PORT, config.EMAIL_FROM)

    def send(self, to: Optional[str], subject: str, body: str) -> bool:
        if not to:
            return False
        try:
            if not self.host:
                logger.info("Email (not delivered, no SMTP host) to=%s subject=%r", to, subject)
                return True
            msg = EmailMessage()
            msg["From"] = self.sender
            msg["To"] = to
            msg["Subject"] = subject
            msg.set_content(body)
            with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
                smtp.send_message(msg)
            logger.info("Email sent to=%s subject=%r", to, subject)
            return True
        except Exception:
            logger.exception("Error sending email to %s", to)
            return False


class Notifier:
    def __init__(self, db: Database, email: Optional[EmailSink] = None):
        self.db = db
        self.email = email or EmailSink()

    def notify(self, user_id: str, type: str, title: str, message: str,
               data: Optional[Dict[str, Any]] = None) -> Optional[str]:
        try:
            note = Notifications(user_id=user_id, type=type, title=title, message=message, data=data or {})
            return create_document(self.db, "notifications", note)
        except Exception:
            logger.exception("Failed to store %s notification for user %s", type, user_id)
            return None

    def email_user(self, user_id: str, subject: str, body: str) -> bool:
        try:
            user = self.db.users.find_one({"_id": user_id})
        except Exception:
            logger.exception("Failed to look up user %s for email", user_id)
            return False
        if not user or not user.get("email"):
            logger.info("No email on file for user %s, skipping %r", user_id, subject)
            return False
        return self.email.send(user["email"], subject, body)

    def inventory_managers(self) -> List[dict]:
        try:
            return list(self.db.users.find({"role": Role.INVENTORY_MANAGER.value, "active": True}))
        except Exception:
            logger.exception("Failed to look up inventory managers")
            return []

    def for_user(self, user_id: str, unread_only: bool = False) -> List[dict]:
        filt: Dict[str, Any] = {"user_id": user_id}
        if unread_only:
            filt["read"] = False
        return list(self.db.notifications.find(filt).sort("created_at", -1))


def short_id(id_str: str) -> str:
    return str(id_str)[-8:]
