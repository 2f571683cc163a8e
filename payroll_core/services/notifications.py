# payroll_core/services/notifications.py
from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Iterable, Optional

from payroll_core.common.roles import Role
from payroll_core.common.settings import PayrollSettings
from payroll_core.extensions import db
from payroll_core.models.notification import Notification
from payroll_core.models.user import User

log = logging.getLogger(__name__)

RECENT_MAIL_KEPT = 100


class LoggingEmailSender:
    """Mail transport stand-in: SMTP delivery belongs to the host application."""

    def __init__(self, mail_from: str, keep: int = RECENT_MAIL_KEPT):
        self.mail_from = mail_from
        # most recent hand-offs only
        self.sent: Deque[dict] = deque(maxlen=keep)

    def send(self, to: str, subject: str, body: str) -> None:
        self.sent.append({"from": self.mail_from, "to": to, "subject": subject, "body": body})
        log.info("mail from=%s to=%s subject=%r", self.mail_from, to, subject)


class NotificationDispatcher:
    """In-app notification rows plus a mail hand-off. Never raises."""

    def __init__(self, settings: PayrollSettings, email_sender=None, session=None):
        self.settings = settings
        self.email_sender = email_sender or LoggingEmailSender(settings.mail_from)
        self.session = session or db.session

    def notify(self, user_id: Optional[int], subject: str, message: str,
               email: Optional[str] = None) -> bool:
        if not user_id:
            return False
        try:
            self.session.add(Notification(user_id=user_id, subject=subject, message=message))
            self.session.commit()
        except Exception:
            self.session.rollback()
            log.exception("notification write failed for user %s (%s)", user_id, subject)
            return False

        if email:
            try:
                self.email_sender.send(email, subject, message)
            except Exception:
                log.exception("mail hand-off failed for %s (%s)", email, subject)
        return True

    def notify_user(self, user: Optional[User], subject: str, message: str) -> bool:
        if user is None:
            return False
        return self.notify(user.id, subject, message, email=user.email)

    def notify_role(self, role: Role, subject: str, message: str) -> int:
        try:
            users = self.session.query(User).filter_by(role=role, is_active=True).all()
        except Exception:
            log.exception("could not load %s users for notification", role.value)
            return 0
        return self._fan_out(users, subject, message)

    def _fan_out(self, users: Iterable[User], subject: str, message: str) -> int:
        sent = 0
        for u in users:
            if self.notify_user(u, subject, message):
                sent += 1
        return sent


def notify_pending_approval(notifier: NotificationDispatcher, subject: str, message: str) -> int:
    """Tell every HR manager something is waiting for them."""
    return notifier.notify_role(Role.HR_MANAGER, subject, message)
