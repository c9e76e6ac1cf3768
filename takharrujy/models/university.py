"""
Takharrujy workflow core
Tenant models.

Models:
    - University: tenant root, everything else is scoped to one
    - User: platform account with a fixed role inside one university
"""

from datetime import datetime, timezone

from takharrujy.models import db
from takharrujy.models.base import UniversityModel, one_of

# ── Constants ────────────────────────────────────────────────────────────────

ROLE_STUDENT = "student"
ROLE_SUPERVISOR = "supervisor"
ROLE_ADMIN = "admin"

USER_ROLES = {ROLE_STUDENT, ROLE_SUPERVISOR, ROLE_ADMIN}


class University(db.Model):
    """
    Tenant root.

    Created by platform tooling and soft-deactivated, never hard-deleted.
    An inactive university denies every action of its users.
    """

    __tablename__ = "universities"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    name_ar = db.Column(db.String(200), nullable=True)
    domain = db.Column(db.String(200), unique=True, nullable=False,
                       comment="E-mail domain, e.g. uni.edu.sa")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    users = db.relationship("User", back_populates="university", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "name_ar": self.name_ar,
            "domain": self.domain,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<University {self.id}: {self.domain}>"


class User(UniversityModel):
    """Platform account. Role is fixed for the lifetime of a session."""

    __tablename__ = "users"
    __table_args__ = (
        db.UniqueConstraint("university_id", "email", name="uq_user_university_email"),
        db.CheckConstraint(one_of("role", USER_ROLES), name="ck_user_role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(200), nullable=False)
    full_name_ar = db.Column(db.String(200), nullable=True)
    role = db.Column(db.String(20), nullable=False, default=ROLE_STUDENT,
                     comment="student | supervisor | admin")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    email_verified = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    university = db.relationship("University", back_populates="users")

    @property
    def is_student(self) -> bool:
        return self.role == ROLE_STUDENT

    @property
    def is_supervisor(self) -> bool:
        return self.role == ROLE_SUPERVISOR

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def to_dict(self):
        return {
            "id": self.id,
            "university_id": self.university_id,
            "email": self.email,
            "full_name": self.full_name,
            "full_name_ar": self.full_name_ar,
            "role": self.role,
            "is_active": self.is_active,
            "email_verified": self.email_verified,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email} ({self.role})>"
