"""
University administration (platform tooling).

Universities are the tenant roots: created here, soft-deactivated here,
never hard-deleted. Accounts are enrolled under a university only with
an e-mail address on the university's own domain.
"""

import logging

from sqlalchemy import func, select

from takharrujy.core.exceptions import ConflictError, NotFoundError, ValidationError
from takharrujy.models import db
from takharrujy.models.audit import write_audit
from takharrujy.models.university import USER_ROLES, University, User
from takharrujy.utils.helpers import atomic, commit_or_conflict, require_text

logger = logging.getLogger(__name__)


def _get_university(university_id: int) -> University:
    university = db.session.get(University, university_id)
    if university is None:
        raise NotFoundError("University", university_id)
    return university


@atomic
def create_university(name: str, domain: str, *, name_ar: str | None = None) -> University:
    name = require_text(name, "name")
    domain = require_text(domain, "domain").lower()
    exists = db.session.execute(
        select(University.id).where(func.lower(University.domain) == domain)
    ).first()
    if exists:
        raise ConflictError("University", "domain", domain)

    university = University(name=name, name_ar=name_ar, domain=domain, is_active=True)
    db.session.add(university)
    commit_or_conflict("University")
    logger.info("University created id=%s domain=%s", university.id, domain)
    return university


@atomic
def set_university_active(university_id: int, active: bool) -> University:
    """Soft (de)activation. An inactive university denies every action of its users."""
    university = _get_university(university_id)
    previous = university.is_active
    university.is_active = active
    try:
        write_audit(
            entity_type="university",
            entity_id=university.id,
            action="university.activate" if active else "university.deactivate",
            university_id=university.id,
            diff={"is_active": {"old": previous, "new": active}},
        )
    except Exception:
        logger.warning("Audit log failed for university; main flow unaffected", exc_info=True)
    commit_or_conflict("University")
    logger.info("University %s id=%s", "activated" if active else "deactivated", university.id)
    return university


@atomic
def enroll_user(university_id: int, data: dict) -> User:
    """
    Create an account under ``university_id``.

    ``data`` keys: email, full_name, full_name_ar, role (default student),
    email_verified.
    """
    university = _get_university(university_id)
    email = require_text(data.get("email"), "email").lower()
    full_name = require_text(data.get("full_name"), "full_name")
    role = data.get("role") or "student"

    errors = {}
    if role not in USER_ROLES:
        errors["role"] = f"one of {sorted(USER_ROLES)}"
    if not email.endswith("@" + university.domain):
        errors["email"] = f"must be an address on {university.domain}"
    if errors:
        raise ValidationError("Invalid user", details=errors)

    exists = db.session.execute(
        select(User.id).where(User.university_id == university.id, User.email == email)
    ).first()
    if exists:
        raise ConflictError("User", "email", email)

    user = User(
        university_id=university.id,
        email=email,
        full_name=full_name,
        full_name_ar=data.get("full_name_ar"),
        role=role,
        is_active=True,
        email_verified=bool(data.get("email_verified", False)),
    )
    db.session.add(user)
    commit_or_conflict("User")
    logger.info("User enrolled id=%s university=%s role=%s", user.id, university.id, role)
    return user
