"""
Takharrujy workflow core
Project domain models.

Models:
    - Project: graduation project owned by a team leader, reviewed by a supervisor
    - TeamMembership: one (project, user) row per team seat or invitation

State machines (action -> {from, to}):
    Project:    draft -> submitted -> approved | rejected
                approved -> in_progress -> completed
    Membership: pending -> active | rejected
                pending/active -> removed | inactive
                rejected/removed -> pending (re-invite)
"""

from datetime import datetime, timezone

from takharrujy.models import db
from takharrujy.models.base import UniversityModel, one_of

# ── Constants ────────────────────────────────────────────────────────────────

PROJECT_STATUSES = {"draft", "submitted", "approved", "rejected", "in_progress", "completed"}
EDITABLE_STATUSES = {"draft", "in_progress"}
CLOSED_STATUSES = {"rejected", "completed"}

PROJECT_TRANSITIONS = {
    "submit": {"from": ["draft"], "to": "submitted"},
    "approve": {"from": ["submitted"], "to": "approved"},
    "reject": {"from": ["submitted"], "to": "rejected"},
    "start": {"from": ["approved"], "to": "in_progress"},
    "complete": {"from": ["in_progress"], "to": "completed"},
}

MEMBER_ROLES = {"leader", "member"}
MEMBERSHIP_STATUSES = {"pending", "active", "rejected", "removed", "inactive"}

MEMBERSHIP_TRANSITIONS = {
    "accept": {"from": ["pending"], "to": "active"},
    "decline": {"from": ["pending"], "to": "rejected"},
    "remove": {"from": ["pending", "active"], "to": "removed"},
    "leave": {"from": ["active"], "to": "removed"},
    "release": {"from": ["pending", "active"], "to": "inactive"},
    "reinvite": {"from": ["rejected", "removed"], "to": "pending"},
}

# Leader included.
MAX_TEAM_SIZE = 4
MIN_SUBMISSION_DESCRIPTION = 50


def _utcnow():
    return datetime.now(timezone.utc)


class Project(UniversityModel):
    """
    Graduation project.

    The leader always holds an ACTIVE ``leader`` membership row. The
    supervisor, when bound, belongs to the same university. ``version``
    is the optimistic-lock counter used by the mapper.
    """

    __tablename__ = "projects"
    __table_args__ = (
        db.Index("ix_projects_university_status", "university_id", "status"),
        db.CheckConstraint(one_of("status", PROJECT_STATUSES), name="ck_project_status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    title_ar = db.Column(db.String(200), nullable=True)
    description = db.Column(db.Text, default="")
    description_ar = db.Column(db.Text, nullable=True)
    status = db.Column(
        db.String(20), nullable=False, default="draft",
        comment="draft | submitted | approved | rejected | in_progress | completed",
    )

    leader_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    supervisor_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    preferred_supervisor_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        comment="Requested at creation; decides the review when no supervisor is bound",
    )

    start_date = db.Column(db.Date, nullable=True)
    due_date = db.Column(db.Date, nullable=True)
    completion_date = db.Column(db.Date, nullable=True)

    supervisor_feedback = db.Column(db.Text, nullable=True)
    supervisor_feedback_ar = db.Column(db.Text, nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    leader = db.relationship("User", foreign_keys=[leader_id])
    supervisor = db.relationship("User", foreign_keys=[supervisor_id])
    preferred_supervisor = db.relationship("User", foreign_keys=[preferred_supervisor_id])
    memberships = db.relationship(
        "TeamMembership", back_populates="project",
        cascade="all, delete-orphan", order_by="TeamMembership.id",
    )
    tasks = db.relationship(
        "Task", back_populates="project",
        cascade="all, delete-orphan", order_by="Task.id",
    )
    deliverables = db.relationship(
        "Deliverable", back_populates="project",
        cascade="all, delete-orphan", order_by="Deliverable.id",
    )

    @property
    def is_editable(self) -> bool:
        return self.status in EDITABLE_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "university_id": self.university_id,
            "title": self.title,
            "title_ar": self.title_ar,
            "description": self.description,
            "description_ar": self.description_ar,
            "status": self.status,
            "leader_id": self.leader_id,
            "supervisor_id": self.supervisor_id,
            "preferred_supervisor_id": self.preferred_supervisor_id,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "completion_date": self.completion_date.isoformat() if self.completion_date else None,
            "supervisor_feedback": self.supervisor_feedback,
            "supervisor_feedback_ar": self.supervisor_feedback_ar,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Project {self.id}: {self.title} [{self.status}]>"


class TeamMembership(UniversityModel):
    """
    One seat (or invitation) on a project team.

    At most one ACTIVE row per user across the whole database; the
    partial unique index backs the service-level check.
    """

    __tablename__ = "team_memberships"
    __table_args__ = (
        db.UniqueConstraint("project_id", "user_id", name="uq_membership_project_user"),
        db.Index(
            "uq_membership_one_active", "user_id",
            unique=True,
            sqlite_where=db.text("status = 'active'"),
            postgresql_where=db.text("status = 'active'"),
        ),
        db.CheckConstraint(one_of("role", MEMBER_ROLES), name="ck_membership_role"),
        db.CheckConstraint(one_of("status", MEMBERSHIP_STATUSES), name="ck_membership_status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
    )
    role = db.Column(db.String(10), nullable=False, default="member", comment="leader | member")
    status = db.Column(
        db.String(10), nullable=False, default="pending",
        comment="pending | active | rejected | removed | inactive",
    )
    invited_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    invited_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    joined_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ended_at = db.Column(db.DateTime(timezone=True), nullable=True)

    project = db.relationship("Project", back_populates="memberships")
    user = db.relationship("User", foreign_keys=[user_id])

    @property
    def is_leader(self) -> bool:
        return self.role == "leader"

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "role": self.role,
            "status": self.status,
            "invited_by_id": self.invited_by_id,
            "invited_at": self.invited_at.isoformat() if self.invited_at else None,
            "joined_at": self.joined_at.isoformat() if self.joined_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
        }

    def __repr__(self):
        return f"<TeamMembership {self.id}: user={self.user_id} project={self.project_id} [{self.status}]>"
