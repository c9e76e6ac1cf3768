"""
Access policy: the single place that decides who may do what.

``allow(actor, action, target)`` is a pure decision. It reads the actor,
the target and the target's project (membership rows included) and never
raises for business reasons. ``authorize`` wraps it and raises
ForbiddenError; every mutating service operation calls ``authorize``
exactly once before touching state.

Rule order (first match wins):
    1. inactive actor, inactive university or foreign university -> deny;
       project.create is for students only; team and detail edits need an
       editable status whoever asks
    2. admin -> permit
    3. supervisor -> only on projects they supervise, except the review
       decision on a project with no bound supervisor
    4-10. student rules, keyed by action (leader / creator / assignee /
       invited user / active member)
    11. default -> deny

Usage:
    from takharrujy.services.access_policy import Action, authorize

    authorize(actor, Action.PROJECT_SUBMIT, project)
"""

import logging

from takharrujy.core.exceptions import ForbiddenError
from takharrujy.models.project import Project, TeamMembership
from takharrujy.models.university import University

logger = logging.getLogger(__name__)


class Action:
    """Action vocabulary understood by the policy."""

    PROJECT_CREATE = "project.create"
    PROJECT_VIEW = "project.view"
    PROJECT_UPDATE = "project.update"
    PROJECT_SUBMIT = "project.submit"
    PROJECT_DECIDE = "project.decide"
    PROJECT_START = "project.start"
    PROJECT_COMPLETE = "project.complete"
    PROJECT_FEEDBACK = "project.feedback"
    PROJECT_ASSIGN_SUPERVISOR = "project.assign_supervisor"
    PROJECT_DELETE = "project.delete"

    MEMBER_INVITE = "member.invite"
    MEMBER_REMOVE = "member.remove"
    MEMBER_RESPOND = "member.respond"
    MEMBER_LEAVE = "member.leave"

    TASK_VIEW = "task.view"
    TASK_CREATE = "task.create"
    TASK_ASSIGN = "task.assign"
    TASK_UPDATE = "task.update"
    TASK_STATUS = "task.status"
    TASK_DELETE = "task.delete"
    TASK_DEPENDENCY = "task.dependency"

    DELIVERABLE_VIEW = "deliverable.view"
    DELIVERABLE_CREATE = "deliverable.create"
    DELIVERABLE_UPDATE = "deliverable.update"
    DELIVERABLE_DELETE = "deliverable.delete"
    DELIVERABLE_SUBMIT = "deliverable.submit"
    DELIVERABLE_DECIDE = "deliverable.decide"
    DELIVERABLE_FEEDBACK = "deliverable.feedback"


_SUPERVISOR_ACTIONS = {
    Action.PROJECT_VIEW,
    Action.PROJECT_UPDATE,
    Action.PROJECT_START,
    Action.PROJECT_COMPLETE,
    Action.PROJECT_FEEDBACK,
    Action.TASK_VIEW,
    Action.DELIVERABLE_VIEW,
    Action.DELIVERABLE_DECIDE,
    Action.DELIVERABLE_FEEDBACK,
}

_READ_ACTIONS = {Action.PROJECT_VIEW, Action.TASK_VIEW, Action.DELIVERABLE_VIEW}

_LEADER_ACTIONS = {
    Action.PROJECT_START,
    Action.TASK_CREATE,
    Action.TASK_ASSIGN,
    Action.DELIVERABLE_CREATE,
    Action.DELIVERABLE_UPDATE,
    Action.DELIVERABLE_DELETE,
    Action.DELIVERABLE_SUBMIT,
}

_LEADER_EDIT_ACTIONS = {Action.PROJECT_UPDATE, Action.MEMBER_INVITE, Action.MEMBER_REMOVE}

_FEEDBACK_STATUSES = {"approved", "in_progress"}


def _university_id_of(target):
    if isinstance(target, University):
        return target.id
    return getattr(target, "university_id", None)


def _project_of(target):
    if isinstance(target, Project):
        return target
    return getattr(target, "project", None)


def _membership_of(user, project):
    for membership in project.memberships:
        if membership.user_id == user.id:
            return membership
    return None


def _supervisor_allows(actor, action, target, project) -> bool:
    if project is None:
        return False

    if action == Action.PROJECT_DECIDE:
        if project.supervisor_id is not None:
            return project.supervisor_id == actor.id
        if project.preferred_supervisor_id is not None:
            return project.preferred_supervisor_id == actor.id
        return True

    if project.supervisor_id != actor.id:
        return False
    if action not in _SUPERVISOR_ACTIONS:
        return False
    if action == Action.PROJECT_FEEDBACK:
        return project.status in _FEEDBACK_STATUSES
    return True


def _student_allows(actor, action, target, project) -> bool:
    if project is None:
        return False

    membership = _membership_of(actor, project)
    status = membership.status if membership is not None else None

    if action in _READ_ACTIONS:
        return status in ("active", "inactive")

    if action == Action.MEMBER_RESPOND:
        return isinstance(target, TeamMembership) and target.user_id == actor.id

    # Every remaining student action needs a seat on the team.
    if status != "active":
        return False

    is_leader = project.leader_id == actor.id

    if action in _LEADER_EDIT_ACTIONS:
        return is_leader
    if action in (Action.PROJECT_SUBMIT, Action.PROJECT_DELETE):
        return is_leader and project.status == "draft"
    if action in _LEADER_ACTIONS:
        return is_leader
    if action == Action.MEMBER_LEAVE:
        return (
            isinstance(target, TeamMembership)
            and target.user_id == actor.id
            and not target.is_leader
        )
    if action == Action.TASK_UPDATE:
        return actor.id in (target.created_by_id, target.assignee_id)
    if action == Action.TASK_STATUS:
        return target.assignee_id is not None and target.assignee_id == actor.id
    if action == Action.TASK_DELETE:
        return target.created_by_id == actor.id
    if action == Action.TASK_DEPENDENCY:
        return True
    return False


def allow(actor, action: str, target) -> bool:
    """Return True if ``actor`` may perform ``action`` on ``target``."""
    if actor is None or not actor.is_active:
        return False
    university = actor.university
    if university is None or not university.is_active:
        return False
    if _university_id_of(target) != actor.university_id:
        return False

    # Only students open projects; the creator becomes the leader.
    if action == Action.PROJECT_CREATE:
        return actor.is_student and isinstance(target, University)

    project = _project_of(target)

    # Editable-status gate holds for every role, admins included.
    if action in _LEADER_EDIT_ACTIONS and project is not None and not project.is_editable:
        return False

    if actor.is_admin:
        return True
    if actor.is_supervisor:
        return _supervisor_allows(actor, action, target, project)
    if actor.is_student:
        return _student_allows(actor, action, target, project)
    return False


def authorize(actor, action: str, target) -> None:
    """Raise ForbiddenError unless ``allow`` permits the action."""
    if not allow(actor, action, target):
        actor_id = actor.id if actor is not None else None
        logger.info(
            "Access denied action=%s actor=%s target=%s",
            action, actor_id, target,
            extra={"event_type": "access_denied", "actor_id": actor_id, "action": action},
        )
        raise ForbiddenError(action, actor_id)
