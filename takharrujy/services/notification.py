"""
Takharrujy workflow core
Notification Service.

Lifecycle operations never talk to a delivery channel directly. They
return a list of ``Notice`` values next to the entity they changed; the
caller hands that list to ``deliver`` after the unit of work committed.
Delivery is fire-and-forget: a failing dispatcher is logged and skipped,
it never undoes a committed transition.

Any object with ``notify(user, title, body, kind)`` can act as the
dispatcher. ``NotificationService`` is the default one and persists an
in-app ``Notification`` row per recipient.
"""

import logging
from dataclasses import dataclass

from takharrujy.models import db
from takharrujy.models.notification import Notification
from takharrujy.models.university import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notice:
    """One message for one recipient, produced by a lifecycle operation."""

    recipient_id: int
    title: str
    body: str = ""
    kind: str = "project_update"


def notices_for(recipient_ids, title, body="", *, kind="project_update", exclude=None) -> list[Notice]:
    """Build one Notice per distinct recipient, skipping ``exclude``."""
    seen = set()
    notices = []
    for rid in recipient_ids:
        if rid is None or rid == exclude or rid in seen:
            continue
        seen.add(rid)
        notices.append(Notice(recipient_id=rid, title=title, body=body, kind=kind))
    return notices


class NotificationService:
    """Default dispatcher: stores notifications for the in-app inbox."""

    # ── Dispatch ──────────────────────────────────────────────────────────

    @staticmethod
    def notify(user, title, body="", kind="project_update"):
        """
        Create a single notification record for ``user``.

        Returns:
            The created Notification instance (already committed).
        """
        notif = Notification(
            university_id=user.university_id,
            recipient_id=user.id,
            title=title,
            message=body,
            kind=kind,
        )
        db.session.add(notif)
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return notif

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_user(user, unread_only=False, limit=50):
        """Notifications for ``user``, newest first."""
        q = Notification.query_for_university(user.university_id).filter_by(recipient_id=user.id)
        if unread_only:
            q = q.filter_by(is_read=False)
        return q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()

    @staticmethod
    def unread_count(user):
        return (
            Notification.query_for_university(user.university_id)
            .filter_by(recipient_id=user.id, is_read=False)
            .count()
        )

    @staticmethod
    def mark_read(user, notification_id):
        notif = (
            Notification.query_for_university(user.university_id)
            .filter_by(id=notification_id, recipient_id=user.id)
            .first()
        )
        if notif is None:
            return None
        notif.mark_read()
        db.session.commit()
        return notif


def deliver(notices, dispatcher=None) -> int:
    """
    Hand committed notices to ``dispatcher``.

    Failures are logged and swallowed per notice. Returns the number of
    notices delivered.
    """
    if dispatcher is None:
        dispatcher = NotificationService
    delivered = 0
    for notice in notices:
        try:
            user = db.session.get(User, notice.recipient_id)
            if user is None or not user.is_active:
                continue
            dispatcher.notify(user, notice.title, notice.body, notice.kind)
            delivered += 1
        except Exception:
            logger.warning(
                "Notification delivery failed recipient=%s title=%r; transition unaffected",
                notice.recipient_id, notice.title, exc_info=True,
            )
    return delivered
