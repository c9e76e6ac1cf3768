"""
Project lifecycle service.

Manages graduation projects from proposal to completion:

    draft --submit--> submitted --approve--> approved --start--> in_progress --complete--> completed
                                 \\--reject--> rejected

Every operation follows the same order:
    1. scoped load (row lock)      4. execute + side effects
    2. access policy               5. audit log
    3. transition / field checks   6. commit, then notify

Editable statuses are draft and in_progress. Reaching rejected or
completed releases the team so its students can join another project.

Usage:
    from takharrujy.services.project_lifecycle import create_project, submit_project

    project, notices = create_project(student, {"title": "Smart Campus", ...})
    project, notices = submit_project(student, project.id)
"""

import logging
from datetime import date

from sqlalchemy import case, func, select

from takharrujy.core.exceptions import ConflictError, TransitionError, ValidationError
from takharrujy.models import db
from takharrujy.models.audit import write_audit
from takharrujy.models.deliverable import Deliverable
from takharrujy.models.project import (
    CLOSED_STATUSES,
    MIN_SUBMISSION_DESCRIPTION,
    PROJECT_TRANSITIONS,
    Project,
)
from takharrujy.models.task import Task
from takharrujy.models.university import User
from takharrujy.services import membership_ledger
from takharrujy.services.access_policy import Action, authorize
from takharrujy.services.helpers.scoped_queries import get_scoped, get_scoped_or_none
from takharrujy.services.helpers.state_machine import available_actions, next_status
from takharrujy.services.notification import deliver, notices_for
from takharrujy.utils.helpers import (
    atomic,
    commit_or_conflict,
    parse_date_input,
    require_text,
    validate_date_range,
)

logger = logging.getLogger(__name__)

_UPDATABLE_TEXT_FIELDS = ("title_ar", "description", "description_ar")


def _audit(project: Project, action: str, actor_id, diff: dict, *, link_project: bool = True):
    try:
        write_audit(
            entity_type="project",
            entity_id=project.id,
            action=f"project.{action}",
            actor_user_id=actor_id,
            university_id=project.university_id,
            project_id=project.id if link_project else None,
            diff=diff,
        )
    except Exception:
        logger.warning("Audit log failed for project %s; main flow unaffected", action, exc_info=True)


def _load(actor: User, project_id: int) -> Project:
    return get_scoped(Project, project_id, university_id=actor.university_id, for_update=True)


def _check_submission_fields(project: Project) -> None:
    """Fields a project needs before it can go to review."""
    errors = {}
    if not (project.title or "").strip():
        errors["title"] = "required"
    if len((project.description or "").strip()) < MIN_SUBMISSION_DESCRIPTION:
        errors["description"] = f"must be at least {MIN_SUBMISSION_DESCRIPTION} characters"
    if project.start_date is None:
        errors["start_date"] = "required"
    if project.due_date is None:
        errors["due_date"] = "required"
    if errors:
        raise ValidationError("Project is not ready for submission", details=errors)


def _load_supervisor(university_id: int, user_id, field: str) -> User:
    user = get_scoped_or_none(User, user_id, university_id=university_id)
    if user is None or not user.is_active or not (user.is_supervisor or user.is_admin):
        raise ValidationError(
            "Supervisor must be an active supervisor of the same university",
            details={field: f"user {user_id} cannot supervise"},
        )
    return user


def _reviewer_id(project: Project):
    return project.supervisor_id or project.preferred_supervisor_id


# ═════════════════════════════════════════════════════════════════════════════
# Create / update / delete
# ═════════════════════════════════════════════════════════════════════════════


@atomic
def create_project(actor: User, data: dict, *, dispatcher=None):
    """
    Create a project led by ``actor``.

    Args (``data`` keys):
        title, title_ar, description, description_ar: text fields
        start_date, due_date: dates or ISO strings
        member_ids: up to three students to invite
        preferred_supervisor_id: optional reviewer; bound right away for drafts
        save_as_draft: True (default) -> draft, False -> submitted

    Returns:
        (Project, [Notice])

    Raises:
        ForbiddenError, ValidationError, ConflictError
    """
    authorize(actor, Action.PROJECT_CREATE, actor.university)

    if membership_ledger.has_active_membership(actor.id):
        raise ConflictError(
            "TeamMembership", "user_id", actor.id, message="You already have an active project",
        )

    title = require_text(data.get("title"), "title")
    start_date = parse_date_input(data.get("start_date"), "start_date")
    due_date = parse_date_input(data.get("due_date"), "due_date")
    validate_date_range(start_date, due_date)

    members = membership_ledger.resolve_candidates(actor, data.get("member_ids"))

    save_as_draft = data.get("save_as_draft", True)
    preferred = None
    if data.get("preferred_supervisor_id") is not None:
        preferred = _load_supervisor(
            actor.university_id, data["preferred_supervisor_id"], "preferred_supervisor_id",
        )

    project = Project(
        university_id=actor.university_id,
        title=title,
        title_ar=data.get("title_ar"),
        description=data.get("description") or "",
        description_ar=data.get("description_ar"),
        status="draft",
        leader=actor,
        start_date=start_date,
        due_date=due_date,
        preferred_supervisor=preferred,
        supervisor=preferred if save_as_draft else None,
    )
    if not save_as_draft:
        _check_submission_fields(project)
        project.status = "submitted"

    db.session.add(project)
    membership_ledger.add_leader(project, actor)
    db.session.flush()
    invited = membership_ledger.invite_members(project, actor, members)

    _audit(project, "create", actor.id, {
        "status": {"old": None, "new": project.status},
        "member_ids": [m.user_id for m in invited],
    })
    commit_or_conflict("Project")
    logger.info("Project created id=%s status=%s leader=%s", project.id, project.status, actor.id)

    notices = notices_for(
        [m.user_id for m in invited], "Team invitation",
        f"{actor.full_name} invited you to the project '{project.title}'",
        kind="team_invitation",
    )
    if project.status == "submitted":
        notices += notices_for(
            [_reviewer_id(project)], "Project submitted for review",
            f"'{project.title}' is waiting for your review",
        )
    deliver(notices, dispatcher)
    return project, notices


@atomic
def update_project(actor: User, project_id: int, patch: dict, *, dispatcher=None):
    """
    Apply the non-null fields of ``patch``.

    ``member_ids`` replaces the invited team and is accepted in draft only.
    """
    project = _load(actor, project_id)
    authorize(actor, Action.PROJECT_UPDATE, project)

    changes = {}
    if patch.get("title") is not None:
        changes["title"] = require_text(patch["title"], "title")
    for field in _UPDATABLE_TEXT_FIELDS:
        if patch.get(field) is not None:
            changes[field] = patch[field]

    start_date = project.start_date
    due_date = project.due_date
    if patch.get("start_date") is not None:
        start_date = parse_date_input(patch["start_date"], "start_date")
    if patch.get("due_date") is not None:
        due_date = parse_date_input(patch["due_date"], "due_date")
    validate_date_range(start_date, due_date)
    changes["start_date"] = start_date
    changes["due_date"] = due_date

    if patch.get("member_ids") is not None and project.status != "draft":
        raise ValidationError(
            "The team can only be changed while the project is a draft",
            details={"member_ids": "draft only"},
        )

    diff = {}
    for field, value in changes.items():
        if value != getattr(project, field):
            diff[field] = {"old": getattr(project, field), "new": value}
            setattr(project, field, value)

    invited = []
    if patch.get("member_ids") is not None:
        invited = membership_ledger.replace_members(project, actor, patch["member_ids"])
        diff["member_ids"] = {"new": [m.user_id for m in invited]}

    if diff:
        _audit(project, "update", actor.id, diff)
    commit_or_conflict("Project")
    logger.info("Project updated id=%s fields=%s", project.id, sorted(diff))

    notices = []
    if diff:
        invited_ids = {m.user_id for m in invited}
        notices = notices_for(
            [uid for uid in membership_ledger.team_recipient_ids(project) if uid not in invited_ids],
            "Project updated", f"'{project.title}' was updated", exclude=actor.id,
        )
        notices += notices_for(
            invited_ids, "Team invitation",
            f"You were invited to the project '{project.title}'",
            kind="team_invitation",
        )
    deliver(notices, dispatcher)
    return project, notices


@atomic
def delete_project(actor: User, project_id: int, *, dispatcher=None):
    """Delete a draft (leader) or any project (admin), with all its children."""
    project = _load(actor, project_id)
    authorize(actor, Action.PROJECT_DELETE, project)

    recipients = membership_ledger.team_recipient_ids(project)
    title = project.title
    _audit(project, "delete", actor.id, {"status": {"old": project.status, "new": None}},
           link_project=False)
    db.session.delete(project)
    commit_or_conflict("Project")
    logger.info("Project deleted id=%s by=%s", project_id, actor.id)

    notices = notices_for(recipients, "Project deleted", f"'{title}' was deleted", exclude=actor.id)
    deliver(notices, dispatcher)
    return project_id, notices


# ═════════════════════════════════════════════════════════════════════════════
# Review workflow
# ═════════════════════════════════════════════════════════════════════════════


@atomic
def submit_project(actor: User, project_id: int, *, dispatcher=None):
    """Leader sends a complete draft to review (draft -> submitted)."""
    project = _load(actor, project_id)
    authorize(actor, Action.PROJECT_SUBMIT, project)
    _check_submission_fields(project)

    previous = project.status
    project.status = next_status(PROJECT_TRANSITIONS, project, "submit", "Project")

    _audit(project, "submit", actor.id, {"status": {"old": previous, "new": project.status}})
    commit_or_conflict("Project")
    logger.info("Project submitted id=%s actor=%s", project.id, actor.id)

    notices = notices_for(
        [_reviewer_id(project)], "Project submitted for review",
        f"'{project.title}' is waiting for your review",
    )
    notices += notices_for(
        membership_ledger.team_recipient_ids(project), "Project submitted",
        f"'{project.title}' was submitted for review", exclude=actor.id,
    )
    deliver(notices, dispatcher)
    return project, notices


@atomic
def decide_project(actor: User, project_id: int, approved: bool, *,
                   feedback: str | None = None, feedback_ar: str | None = None,
                   dispatcher=None):
    """
    Supervisor decision on a submitted project.

    Approve binds ``supervisor = actor``. Reject leaves the supervisor as
    it was and releases the team. Deciding the same way twice, or on a
    project that is not submitted, raises TransitionError (409).
    """
    project = _load(actor, project_id)
    authorize(actor, Action.PROJECT_DECIDE, project)

    action = "approve" if approved else "reject"
    if project.status == PROJECT_TRANSITIONS[action]["to"]:
        raise TransitionError(
            "Project", project.id, action, project.status,
            reason=f"project is already {project.status}",
        )
    new_status = next_status(PROJECT_TRANSITIONS, project, action, "Project")

    recipients = membership_ledger.team_recipient_ids(project)
    previous = project.status
    project.status = new_status
    if feedback is not None:
        project.supervisor_feedback = feedback
    if feedback_ar is not None:
        project.supervisor_feedback_ar = feedback_ar

    diff = {"status": {"old": previous, "new": new_status}}
    if approved:
        diff["supervisor_id"] = {"old": project.supervisor_id, "new": actor.id}
        project.supervisor = actor
    else:
        membership_ledger.release_team(project, actor.id)

    _audit(project, action, actor.id, diff)
    commit_or_conflict("Project")
    logger.info("Project %s id=%s supervisor=%s", new_status, project.id, actor.id)

    verb = "approved" if approved else "rejected"
    notices = notices_for(
        recipients, f"Project {verb}", f"'{project.title}' was {verb} by {actor.full_name}",
    )
    deliver(notices, dispatcher)
    return project, notices


def _enter_in_progress(project: Project, actor_id) -> None:
    previous = project.status
    project.status = next_status(PROJECT_TRANSITIONS, project, "start", "Project")
    _audit(project, "start", actor_id, {"status": {"old": previous, "new": project.status}})


@atomic
def start_project(actor: User, project_id: int, *, dispatcher=None):
    """Begin work on an approved project (approved -> in_progress)."""
    project = _load(actor, project_id)
    authorize(actor, Action.PROJECT_START, project)
    _enter_in_progress(project, actor.id)
    commit_or_conflict("Project")
    logger.info("Project started id=%s actor=%s", project.id, actor.id)

    notices = notices_for(
        membership_ledger.team_recipient_ids(project) + [project.supervisor_id],
        "Project started", f"Work on '{project.title}' has started", exclude=actor.id,
    )
    deliver(notices, dispatcher)
    return project, notices


def start_if_approved(project: Project, actor_id) -> bool:
    """
    Move an approved project to in_progress inside the caller's unit of work.

    Used when the first task of an approved project starts. Returns True
    if the project changed status.
    """
    if project.status != "approved":
        return False
    _enter_in_progress(project, actor_id)
    logger.info("Project started by first task id=%s actor=%s", project.id, actor_id)
    return True


@atomic
def complete_project(actor: User, project_id: int, *, dispatcher=None):
    """Supervisor closes a project in progress (in_progress -> completed)."""
    project = _load(actor, project_id)
    authorize(actor, Action.PROJECT_COMPLETE, project)

    previous = project.status
    project.status = next_status(PROJECT_TRANSITIONS, project, "complete", "Project")
    project.completion_date = date.today()
    recipients = membership_ledger.team_recipient_ids(project)
    membership_ledger.release_team(project, actor.id)

    _audit(project, "complete", actor.id, {"status": {"old": previous, "new": project.status}})
    commit_or_conflict("Project")
    logger.info("Project completed id=%s actor=%s", project.id, actor.id)

    notices = notices_for(recipients, "Project completed", f"'{project.title}' is completed")
    deliver(notices, dispatcher)
    return project, notices


# ═════════════════════════════════════════════════════════════════════════════
# Supervisor administration
# ═════════════════════════════════════════════════════════════════════════════


@atomic
def give_project_feedback(actor: User, project_id: int, text: str | None,
                          text_ar: str | None = None, *, dispatcher=None):
    """Supervisor feedback on an approved or running project. Status is unchanged."""
    project = _load(actor, project_id)
    authorize(actor, Action.PROJECT_FEEDBACK, project)
    if not (text or "").strip() and not (text_ar or "").strip():
        raise ValidationError("Feedback text is required", details={"feedback": "required"})

    project.supervisor_feedback = text
    project.supervisor_feedback_ar = text_ar
    _audit(project, "feedback", actor.id, {"supervisor_feedback": {"new": text}})
    commit_or_conflict("Project")
    logger.info("Project feedback id=%s supervisor=%s", project.id, actor.id)

    notices = notices_for(
        membership_ledger.team_recipient_ids(project), "New supervisor feedback",
        f"Feedback was added to '{project.title}'", kind="feedback",
    )
    deliver(notices, dispatcher)
    return project, notices


@atomic
def assign_supervisor(actor: User, project_id: int, supervisor_id: int, *, dispatcher=None):
    """Admin binds a supervisor to an open project."""
    project = _load(actor, project_id)
    authorize(actor, Action.PROJECT_ASSIGN_SUPERVISOR, project)
    if project.status in CLOSED_STATUSES:
        raise ConflictError(
            "Project", "status", project.status,
            message=f"Cannot assign a supervisor to a {project.status} project",
        )
    supervisor = _load_supervisor(project.university_id, supervisor_id, "supervisor_id")
    if not supervisor.is_supervisor:
        raise ValidationError(
            "User is not a supervisor", details={"supervisor_id": "supervisor role required"},
        )

    previous = project.supervisor_id
    project.supervisor = supervisor
    _audit(project, "assign_supervisor", actor.id,
           {"supervisor_id": {"old": previous, "new": supervisor.id}})
    commit_or_conflict("Project")
    logger.info("Supervisor assigned project=%s supervisor=%s", project.id, supervisor.id)

    notices = notices_for(
        [supervisor.id], "Project assigned",
        f"You now supervise '{project.title}'",
    )
    notices += notices_for(
        [project.leader_id], "Supervisor assigned",
        f"{supervisor.full_name} now supervises '{project.title}'",
    )
    deliver(notices, dispatcher)
    return project, notices


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def get_project(actor: User, project_id: int) -> Project:
    project = get_scoped(Project, project_id, university_id=actor.university_id)
    authorize(actor, Action.PROJECT_VIEW, project)
    return project


def progress_percentage(project: Project) -> int:
    """Completed tasks over all tasks, as a whole percentage (0 with no tasks)."""
    total, completed = db.session.execute(
        select(
            func.count(Task.id),
            func.coalesce(func.sum(case((Task.status == "completed", 1), else_=0)), 0),
        ).where(Task.project_id == project.id)
    ).one()
    if not total:
        return 0
    return int(completed * 100 / total)


def project_overview(actor: User, project_id: int) -> dict:
    """Dashboard summary of one project."""
    project = get_project(actor, project_id)

    task_counts = dict(db.session.execute(
        select(Task.status, func.count(Task.id))
        .where(Task.project_id == project.id)
        .group_by(Task.status)
    ).all())
    deliverable_counts = dict(db.session.execute(
        select(Deliverable.status, func.count(Deliverable.id))
        .where(Deliverable.project_id == project.id)
        .group_by(Deliverable.status)
    ).all())

    return {
        "project": project.to_dict(),
        "team_size": len(membership_ledger.active_member_ids(project)),
        "pending_invitations": sum(1 for m in project.memberships if m.status == "pending"),
        "progress_percentage": progress_percentage(project),
        "tasks": task_counts,
        "deliverables": deliverable_counts,
        "available_actions": available_actions(PROJECT_TRANSITIONS, project.status),
    }
