"""
Deliverable lifecycle service.

    pending --submit--> submitted --approve--> approved
                                  \\--reject--> rejected

The team leader owns deliverables (create, edit, delete, submit); the
assigned supervisor reviews them. Feedback can be attached in any status
and never changes it. Rejected is final: the leader creates a new
deliverable for the resubmission.
"""

import logging
from datetime import date, datetime, timezone

from takharrujy.core.exceptions import ValidationError
from takharrujy.models import db
from takharrujy.models.audit import write_audit
from takharrujy.models.deliverable import DELIVERABLE_STATUSES, DELIVERABLE_TRANSITIONS, Deliverable
from takharrujy.models.project import Project
from takharrujy.models.university import User
from takharrujy.services.access_policy import Action, authorize
from takharrujy.services.helpers.scoped_queries import get_scoped
from takharrujy.services.helpers.state_machine import next_status
from takharrujy.services.notification import deliver, notices_for
from takharrujy.utils.helpers import atomic, commit_or_conflict, parse_date_input, require_text

logger = logging.getLogger(__name__)

_TEXT_FIELDS = ("title_ar", "description", "description_ar")


def _audit(deliverable: Deliverable, action: str, actor_id, diff: dict):
    try:
        write_audit(
            entity_type="deliverable",
            entity_id=deliverable.id,
            action=f"deliverable.{action}",
            actor_user_id=actor_id,
            university_id=deliverable.university_id,
            project_id=deliverable.project_id,
            diff=diff,
        )
    except Exception:
        logger.warning("Audit log failed for deliverable %s; main flow unaffected", action, exc_info=True)


def _load(actor: User, deliverable_id: int) -> Deliverable:
    return get_scoped(
        Deliverable, deliverable_id, university_id=actor.university_id, for_update=True,
    )


def _due_date(value) -> date:
    due = parse_date_input(value, "due_date")
    if due is None:
        raise ValidationError("Due date is required", details={"due_date": "required"})
    if due < date.today():
        raise ValidationError("Due date cannot be in the past", details={"due_date": "past date"})
    return due


@atomic
def create_deliverable(actor: User, project_id: int, data: dict, *, dispatcher=None):
    """Leader adds a deliverable with a title and a due date today or later."""
    project = get_scoped(Project, project_id, university_id=actor.university_id, for_update=True)
    authorize(actor, Action.DELIVERABLE_CREATE, project)

    deliverable = Deliverable(
        university_id=project.university_id,
        project=project,
        title=require_text(data.get("title"), "title"),
        title_ar=data.get("title_ar"),
        description=data.get("description") or "",
        description_ar=data.get("description_ar"),
        due_date=_due_date(data.get("due_date")),
        status="pending",
        created_by_id=actor.id,
    )
    db.session.add(deliverable)
    db.session.flush()
    _audit(deliverable, "create", actor.id, {"status": {"old": None, "new": "pending"}})
    commit_or_conflict("Deliverable")
    logger.info("Deliverable created id=%s project=%s", deliverable.id, project.id)

    notices = notices_for(
        [project.supervisor_id], "New deliverable",
        f"'{deliverable.title}' was added to '{project.title}'", kind="deliverable_update",
    )
    deliver(notices, dispatcher)
    return deliverable, notices


@atomic
def update_deliverable(actor: User, deliverable_id: int, patch: dict):
    """Leader edits the non-null fields of ``patch``; allowed in any status."""
    deliverable = _load(actor, deliverable_id)
    authorize(actor, Action.DELIVERABLE_UPDATE, deliverable)

    changes = {}
    if patch.get("title") is not None:
        changes["title"] = require_text(patch["title"], "title")
    for field in _TEXT_FIELDS:
        if patch.get(field) is not None:
            changes[field] = patch[field]
    if patch.get("due_date") is not None:
        changes["due_date"] = _due_date(patch["due_date"])

    diff = {}
    for field, value in changes.items():
        if value != getattr(deliverable, field):
            diff[field] = {"old": getattr(deliverable, field), "new": value}
            setattr(deliverable, field, value)

    if diff:
        _audit(deliverable, "update", actor.id, diff)
    commit_or_conflict("Deliverable")
    logger.info("Deliverable updated id=%s fields=%s", deliverable.id, sorted(diff))
    return deliverable, []


@atomic
def delete_deliverable(actor: User, deliverable_id: int):
    deliverable = _load(actor, deliverable_id)
    authorize(actor, Action.DELIVERABLE_DELETE, deliverable)

    _audit(deliverable, "delete", actor.id, {"status": {"old": deliverable.status, "new": None}})
    db.session.delete(deliverable)
    commit_or_conflict("Deliverable")
    logger.info("Deliverable deleted id=%s by=%s", deliverable_id, actor.id)
    return deliverable_id, []


@atomic
def submit_deliverable(actor: User, deliverable_id: int, payload: dict, *, dispatcher=None):
    """
    Leader submits a pending deliverable.

    ``payload`` needs ``submission_notes`` or ``submission_file_url``
    (an opaque reference issued by the file store).
    """
    deliverable = _load(actor, deliverable_id)
    authorize(actor, Action.DELIVERABLE_SUBMIT, deliverable)
    new_status = next_status(DELIVERABLE_TRANSITIONS, deliverable, "submit", "Deliverable")

    notes = (payload.get("submission_notes") or "").strip()
    file_url = (payload.get("submission_file_url") or "").strip()
    if not notes and not file_url:
        raise ValidationError(
            "Submission notes or a file are required",
            details={"submission_notes": "notes or file required"},
        )

    previous = deliverable.status
    deliverable.status = new_status
    deliverable.submission_notes = notes or None
    deliverable.submission_file_url = file_url or None
    deliverable.submitted_at = datetime.now(timezone.utc)

    _audit(deliverable, "submit", actor.id, {"status": {"old": previous, "new": new_status}})
    commit_or_conflict("Deliverable")
    logger.info("Deliverable submitted id=%s project=%s", deliverable.id, deliverable.project_id)

    project = deliverable.project
    notices = notices_for(
        [project.supervisor_id], "Deliverable submitted",
        f"'{deliverable.title}' of '{project.title}' is waiting for review",
        kind="deliverable_update",
    )
    deliver(notices, dispatcher)
    return deliverable, notices


@atomic
def decide_deliverable(actor: User, deliverable_id: int, approved: bool, *,
                       feedback: str | None = None, feedback_ar: str | None = None,
                       dispatcher=None):
    """Assigned supervisor approves or rejects a submitted deliverable."""
    deliverable = _load(actor, deliverable_id)
    authorize(actor, Action.DELIVERABLE_DECIDE, deliverable)

    action = "approve" if approved else "reject"
    new_status = next_status(DELIVERABLE_TRANSITIONS, deliverable, action, "Deliverable")

    previous = deliverable.status
    deliverable.status = new_status
    deliverable.decided_at = datetime.now(timezone.utc)
    deliverable.decided_by_id = actor.id
    if feedback is not None:
        deliverable.supervisor_feedback = feedback
    if feedback_ar is not None:
        deliverable.supervisor_feedback_ar = feedback_ar

    _audit(deliverable, action, actor.id, {"status": {"old": previous, "new": new_status}})
    commit_or_conflict("Deliverable")
    logger.info("Deliverable %s id=%s supervisor=%s", new_status, deliverable.id, actor.id)

    notices = notices_for(
        [deliverable.project.leader_id], f"Deliverable {new_status}",
        f"'{deliverable.title}' was {new_status}", kind="deliverable_update",
    )
    deliver(notices, dispatcher)
    return deliverable, notices


@atomic
def give_deliverable_feedback(actor: User, deliverable_id: int, text: str | None,
                              text_ar: str | None = None, *, dispatcher=None):
    """Assigned supervisor attaches feedback; the status is left as is."""
    deliverable = _load(actor, deliverable_id)
    authorize(actor, Action.DELIVERABLE_FEEDBACK, deliverable)
    if not (text or "").strip() and not (text_ar or "").strip():
        raise ValidationError("Feedback text is required", details={"feedback": "required"})

    deliverable.supervisor_feedback = text
    deliverable.supervisor_feedback_ar = text_ar
    _audit(deliverable, "feedback", actor.id, {"supervisor_feedback": {"new": text}})
    commit_or_conflict("Deliverable")
    logger.info("Deliverable feedback id=%s supervisor=%s", deliverable.id, actor.id)

    notices = notices_for(
        [deliverable.project.leader_id], "New deliverable feedback",
        f"Feedback was added to '{deliverable.title}'", kind="feedback",
    )
    deliver(notices, dispatcher)
    return deliverable, notices


# ── Queries ──────────────────────────────────────────────────────────────────


def list_deliverables(actor: User, project_id: int, *, status: str | None = None,
                      overdue: bool = False) -> list[Deliverable]:
    project = get_scoped(Project, project_id, university_id=actor.university_id)
    authorize(actor, Action.DELIVERABLE_VIEW, project)

    q = Deliverable.query_for_university(project.university_id).filter_by(project_id=project.id)
    if status:
        q = q.filter_by(status=status)
    if overdue:
        q = q.filter(Deliverable.status == "pending", Deliverable.due_date < date.today())
    return q.order_by(Deliverable.due_date, Deliverable.id).all()


def deliverable_stats(actor: User, project_id: int) -> dict:
    deliverables = list_deliverables(actor, project_id)
    today = date.today()
    stats = {status: 0 for status in sorted(DELIVERABLE_STATUSES)}
    for deliverable in deliverables:
        stats[deliverable.status] += 1
    stats["total"] = len(deliverables)
    stats["overdue"] = sum(1 for d in deliverables if d.is_overdue(today))
    return stats
