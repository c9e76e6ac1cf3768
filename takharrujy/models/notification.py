"""
Takharrujy workflow core
Notification domain model.

Models:
    - Notification: persisted copy of a notice sent to one user
"""

from datetime import datetime, timezone

from takharrujy.models import db
from takharrujy.models.base import UniversityModel

# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_KINDS = {
    "project_update", "team_invitation", "task_assigned",
    "deliverable_update", "feedback",
}


class Notification(UniversityModel):
    """
    In-app notification entity.

    One record per recipient per event.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    kind = db.Column(db.String(30), default="project_update")

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "title": self.title,
            "message": self.message,
            "kind": self.kind,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
