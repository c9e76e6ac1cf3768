"""
Takharrujy workflow core
Deliverable domain model.

A deliverable is a dated milestone artifact the team leader submits for
supervisor review: pending -> submitted -> approved | rejected.
A rejected deliverable is final; the leader creates a new one.
"""

from datetime import date, datetime, timezone

from takharrujy.models import db
from takharrujy.models.base import UniversityModel

DELIVERABLE_STATUSES = {"pending", "submitted", "approved", "rejected"}

DELIVERABLE_TRANSITIONS = {
    "submit": {"from": ["pending"], "to": "submitted"},
    "approve": {"from": ["submitted"], "to": "approved"},
    "reject": {"from": ["submitted"], "to": "rejected"},
}


def _utcnow():
    return datetime.now(timezone.utc)


class Deliverable(UniversityModel):
    __tablename__ = "deliverables"
    __table_args__ = (
        db.Index("ix_deliverables_project_status", "project_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    title = db.Column(db.String(200), nullable=False)
    title_ar = db.Column(db.String(200), nullable=True)
    description = db.Column(db.Text, default="")
    description_ar = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default="pending",
                       comment="pending | submitted | approved | rejected")
    due_date = db.Column(db.Date, nullable=False)

    submission_notes = db.Column(db.Text, nullable=True)
    submission_file_url = db.Column(db.String(500), nullable=True,
                                    comment="Opaque reference issued by the file store")
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    supervisor_feedback = db.Column(db.Text, nullable=True)
    supervisor_feedback_ar = db.Column(db.Text, nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    decided_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    project = db.relationship("Project", back_populates="deliverables")

    def is_overdue(self, today: date | None = None) -> bool:
        today = today or date.today()
        return self.status == "pending" and self.due_date < today

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "title": self.title,
            "title_ar": self.title_ar,
            "description": self.description,
            "description_ar": self.description_ar,
            "status": self.status,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "submission_notes": self.submission_notes,
            "submission_file_url": self.submission_file_url,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "supervisor_feedback": self.supervisor_feedback,
            "supervisor_feedback_ar": self.supervisor_feedback_ar,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
            "decided_by_id": self.decided_by_id,
            "version": self.version,
        }

    def __repr__(self):
        return f"<Deliverable {self.id}: {self.title} [{self.status}]>"
