"""
Task graph service.

Tasks of one project form a directed acyclic graph through
TaskDependency edges ("task waits for depends_on"). A task may start
only when every task it depends on is completed.

Two ways to change status:
  - lifecycle actions ``start_task`` / ``complete_task`` (TASK_TRANSITIONS),
    where start is gated by dependency readiness
  - ``update_task_status``, a direct override by the assignee checked
    against TASK_STATUS_TRANSITIONS and not gated by readiness

``completion_date`` is set exactly when the status is completed.

Usage:
    from takharrujy.services.task_graph import create_task, start_task

    task, _ = create_task(leader, project.id, {"title": "Literature review", "assignee_id": m.id})
    task, _ = start_task(member, task.id)
"""

import logging
from datetime import date

from sqlalchemy import func, select

from takharrujy.core.exceptions import (
    ConflictError,
    DependencyNotReadyError,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from takharrujy.models import db
from takharrujy.models.audit import write_audit
from takharrujy.models.project import Project
from takharrujy.models.task import (
    TASK_PRIORITIES,
    TASK_STATUS_TRANSITIONS,
    TASK_STATUSES,
    TASK_TRANSITIONS,
    Task,
    TaskDependency,
    validate_no_cycle,
)
from takharrujy.models.university import User
from takharrujy.services import membership_ledger
from takharrujy.services.access_policy import Action, authorize
from takharrujy.services.helpers.scoped_queries import get_scoped, get_scoped_or_none
from takharrujy.services.helpers.state_machine import next_status
from takharrujy.services.notification import deliver, notices_for
from takharrujy.services.project_lifecycle import progress_percentage, start_if_approved
from takharrujy.utils.helpers import (
    atomic,
    commit_or_conflict,
    parse_date_input,
    require_text,
    validate_date_range,
)

logger = logging.getLogger(__name__)

_TEXT_FIELDS = ("title_ar", "description", "description_ar")


def _audit(task: Task, action: str, actor_id, diff: dict):
    try:
        write_audit(
            entity_type="task",
            entity_id=task.id,
            action=f"task.{action}",
            actor_user_id=actor_id,
            university_id=task.university_id,
            project_id=task.project_id,
            diff=diff,
        )
    except Exception:
        logger.warning("Audit log failed for task %s; main flow unaffected", action, exc_info=True)


def _load(actor: User, task_id: int, *, for_update: bool = True) -> Task:
    return get_scoped(Task, task_id, university_id=actor.university_id, for_update=for_update)


def _require_active_member(project: Project, user_id, field: str = "assignee_id") -> User:
    membership = membership_ledger.membership_of(project, user_id)
    if membership is None or membership.status != "active":
        raise ValidationError(
            "Assignee must be an active member of the project",
            details={field: f"user {user_id} is not an active team member"},
        )
    return membership.user


def _task_in_project(project: Project, task_id, field: str) -> Task:
    """Load a task of the same university; it must belong to ``project``."""
    other = get_scoped_or_none(Task, task_id, university_id=project.university_id)
    if other is None:
        raise NotFoundError("Task", task_id)
    if other.project_id != project.id:
        raise ConflictError(
            "Task", field, task_id, message=f"Task {task_id} belongs to a different project",
        )
    return other


def _check_title_unique(project_id: int, title: str, exclude_id=None) -> None:
    stmt = select(Task.id).where(
        Task.project_id == project_id,
        func.lower(Task.title) == title.lower(),
    )
    if exclude_id is not None:
        stmt = stmt.where(Task.id != exclude_id)
    if db.session.execute(stmt).first() is not None:
        raise ConflictError("Task", "title", title)


def _check_priority(priority) -> str:
    if priority not in TASK_PRIORITIES:
        raise ValidationError(
            "Invalid priority", details={"priority": f"one of {sorted(TASK_PRIORITIES)}"},
        )
    return priority


def _check_progress(value) -> int:
    try:
        progress = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Invalid progress", details={"progress_percentage": "integer"}) from exc
    if not 0 <= progress <= 100:
        raise ValidationError("Invalid progress", details={"progress_percentage": "0-100"})
    return progress


def _check_parent(task: Task, parent: Task) -> None:
    """Reject a parent link that would make ``task`` its own ancestor."""
    node = parent
    while node is not None:
        if node.id == task.id:
            raise ValidationError(
                "A task cannot be nested under itself", details={"parent_id": "creates a loop"},
            )
        node = node.parent


def _apply_status(task: Task, new_status: str) -> None:
    task.status = new_status
    if new_status == "completed":
        task.completion_date = date.today()
        task.progress_percentage = 100
    elif task.completion_date is not None:
        # Reopened task starts over.
        task.completion_date = None
        task.progress_percentage = 0
    if new_status == "in_progress" and task.start_date is None:
        task.start_date = date.today()


def _leader_notice(task: Task, actor: User, title: str, body: str):
    return notices_for([task.project.leader_id], title, body, exclude=actor.id)


# ═════════════════════════════════════════════════════════════════════════════
# Readiness
# ═════════════════════════════════════════════════════════════════════════════


def pending_dependency_ids(task: Task) -> list[int]:
    return [dep.id for dep in task.dependencies if dep.status != "completed"]


def can_start(task: Task) -> bool:
    """True when every dependency is completed (vacuously true without any)."""
    return not pending_dependency_ids(task)


# ═════════════════════════════════════════════════════════════════════════════
# Create / update / delete
# ═════════════════════════════════════════════════════════════════════════════


@atomic
def create_task(actor: User, project_id: int, data: dict, *, dispatcher=None):
    """
    Leader creates a task in ``project_id``.

    Args (``data`` keys):
        title (required, unique per project), title_ar, description, description_ar,
        priority, start_date, due_date, estimated_hours, is_milestone,
        assignee_id (active member), parent_id, dependency_ids (same project)

    Returns:
        (Task, [Notice])
    """
    project = get_scoped(Project, project_id, university_id=actor.university_id, for_update=True)
    authorize(actor, Action.TASK_CREATE, project)

    title = require_text(data.get("title"), "title")
    _check_title_unique(project.id, title)
    start_date = parse_date_input(data.get("start_date"), "start_date")
    due_date = parse_date_input(data.get("due_date"), "due_date")
    validate_date_range(start_date, due_date)
    priority = _check_priority(data.get("priority") or "medium")

    assignee = None
    if data.get("assignee_id") is not None:
        assignee = _require_active_member(project, data["assignee_id"])
    parent = None
    if data.get("parent_id") is not None:
        parent = _task_in_project(project, data["parent_id"], "parent_id")

    dependencies = []
    for dep_id in dict.fromkeys(data.get("dependency_ids") or []):
        dependencies.append(_task_in_project(project, dep_id, "dependency_ids"))

    task = Task(
        university_id=project.university_id,
        project=project,
        title=title,
        title_ar=data.get("title_ar"),
        description=data.get("description") or "",
        description_ar=data.get("description_ar"),
        priority=priority,
        status="todo",
        assignee=assignee,
        created_by=actor,
        parent=parent,
        start_date=start_date,
        due_date=due_date,
        progress_percentage=0,
        estimated_hours=data.get("estimated_hours"),
        is_milestone=bool(data.get("is_milestone", False)),
    )
    db.session.add(task)
    for dep in dependencies:
        task.dependency_links.append(TaskDependency(depends_on=dep))
    db.session.flush()

    _audit(task, "create", actor.id, {
        "status": {"old": None, "new": "todo"},
        "dependency_ids": [d.id for d in dependencies],
    })
    commit_or_conflict("Task")
    logger.info("Task created id=%s project=%s", task.id, project.id)

    notices = []
    if assignee is not None:
        notices = notices_for(
            [assignee.id], "Task assigned", f"You were assigned '{task.title}'",
            kind="task_assigned", exclude=actor.id,
        )
    deliver(notices, dispatcher)
    return task, notices


@atomic
def update_task(actor: User, task_id: int, patch: dict):
    """Creator or assignee edits the non-null fields of ``patch``."""
    task = _load(actor, task_id)
    authorize(actor, Action.TASK_UPDATE, task)

    changes = {}
    if patch.get("title") is not None:
        title = require_text(patch["title"], "title")
        if title != task.title:
            _check_title_unique(task.project_id, title, exclude_id=task.id)
        changes["title"] = title
    for field in _TEXT_FIELDS:
        if patch.get(field) is not None:
            changes[field] = patch[field]
    if patch.get("priority") is not None:
        changes["priority"] = _check_priority(patch["priority"])

    start_date = task.start_date
    due_date = task.due_date
    if patch.get("start_date") is not None:
        start_date = parse_date_input(patch["start_date"], "start_date")
    if patch.get("due_date") is not None:
        due_date = parse_date_input(patch["due_date"], "due_date")
    validate_date_range(start_date, due_date)
    changes["start_date"] = start_date
    changes["due_date"] = due_date

    if patch.get("progress_percentage") is not None:
        changes["progress_percentage"] = _check_progress(patch["progress_percentage"])

    parent = None
    if patch.get("parent_id") is not None:
        parent = _task_in_project(task.project, patch["parent_id"], "parent_id")
        _check_parent(task, parent)

    diff = {}
    for field, value in changes.items():
        if value != getattr(task, field):
            diff[field] = {"old": getattr(task, field), "new": value}
            setattr(task, field, value)
    if patch.get("estimated_hours") is not None:
        task.estimated_hours = patch["estimated_hours"]
    if patch.get("is_milestone") is not None:
        task.is_milestone = bool(patch["is_milestone"])
    if parent is not None:
        diff["parent_id"] = {"old": task.parent_id, "new": parent.id}
        task.parent = parent

    if diff:
        _audit(task, "update", actor.id, diff)
    commit_or_conflict("Task")
    logger.info("Task updated id=%s fields=%s", task.id, sorted(diff))
    return task, []


@atomic
def delete_task(actor: User, task_id: int):
    """Creator deletes a task nobody depends on."""
    task = _load(actor, task_id)
    authorize(actor, Action.TASK_DELETE, task)
    if task.dependent_links:
        raise ConflictError(
            "Task", "dependencies", task.id,
            message="Cannot delete a task other tasks depend on",
        )

    _audit(task, "delete", actor.id, {"status": {"old": task.status, "new": None}})
    db.session.delete(task)
    commit_or_conflict("Task")
    logger.info("Task deleted id=%s by=%s", task_id, actor.id)
    return task_id, []


# ═════════════════════════════════════════════════════════════════════════════
# Status changes
# ═════════════════════════════════════════════════════════════════════════════


@atomic
def start_task(actor: User, task_id: int, *, dispatcher=None):
    """
    Assignee starts a task (todo -> in_progress).

    Raises:
        DependencyNotReadyError: some dependency is not completed (409).
        TransitionError: task is not in todo (409).
    """
    task = _load(actor, task_id)
    authorize(actor, Action.TASK_STATUS, task)

    new_status = next_status(TASK_TRANSITIONS, task, "start", "Task")
    pending = pending_dependency_ids(task)
    if pending:
        raise DependencyNotReadyError(task.id, pending)

    previous = task.status
    _apply_status(task, new_status)
    start_if_approved(task.project, actor.id)

    _audit(task, "start", actor.id, {"status": {"old": previous, "new": task.status}})
    commit_or_conflict("Task")
    logger.info("Task started id=%s assignee=%s", task.id, actor.id)

    notices = _leader_notice(task, actor, "Task started", f"'{task.title}' was started")
    deliver(notices, dispatcher)
    return task, notices


@atomic
def complete_task(actor: User, task_id: int, *, dispatcher=None):
    """Assignee marks a task completed; progress becomes 100."""
    task = _load(actor, task_id)
    authorize(actor, Action.TASK_STATUS, task)
    if task.assignee_id is None:
        raise ConflictError("Task", "assignee_id", None, message="Task has no assignee")

    previous = task.status
    _apply_status(task, next_status(TASK_TRANSITIONS, task, "complete", "Task"))

    _audit(task, "complete", actor.id, {"status": {"old": previous, "new": task.status}})
    commit_or_conflict("Task")
    logger.info("Task completed id=%s assignee=%s", task.id, actor.id)

    notices = _leader_notice(task, actor, "Task completed", f"'{task.title}' was completed")
    deliver(notices, dispatcher)
    return task, notices


@atomic
def update_task_status(actor: User, task_id: int, new_status: str, *, dispatcher=None):
    """
    Assignee overrides the status along TASK_STATUS_TRANSITIONS.

    Not gated by dependency readiness. Setting the current status again
    is a no-op.
    """
    task = _load(actor, task_id)
    authorize(actor, Action.TASK_STATUS, task)

    if new_status not in TASK_STATUSES:
        raise ValidationError(
            "Invalid task status", details={"status": f"one of {sorted(TASK_STATUSES)}"},
        )
    if new_status == task.status:
        return task, []
    if new_status not in TASK_STATUS_TRANSITIONS.get(task.status, []):
        raise TransitionError(
            "Task", task.id, f"set_{new_status}", task.status,
            reason=f"Cannot move from '{task.status}' to '{new_status}'",
        )

    previous = task.status
    _apply_status(task, new_status)
    if new_status == "in_progress":
        start_if_approved(task.project, actor.id)

    _audit(task, "status", actor.id, {"status": {"old": previous, "new": new_status}})
    commit_or_conflict("Task")
    logger.info("Task status id=%s %s -> %s", task.id, previous, new_status)

    notices = _leader_notice(
        task, actor, "Task status changed", f"'{task.title}' is now {new_status}",
    )
    deliver(notices, dispatcher)
    return task, notices


@atomic
def assign_task(actor: User, task_id: int, assignee_id: int, *, dispatcher=None):
    """Leader hands a task to an active team member."""
    task = _load(actor, task_id)
    authorize(actor, Action.TASK_ASSIGN, task)
    assignee = _require_active_member(task.project, assignee_id)

    previous = task.assignee_id
    task.assignee = assignee
    _audit(task, "assign", actor.id, {"assignee_id": {"old": previous, "new": assignee.id}})
    commit_or_conflict("Task")
    logger.info("Task assigned id=%s assignee=%s", task.id, assignee.id)

    notices = notices_for(
        [assignee.id], "Task assigned", f"You were assigned '{task.title}'",
        kind="task_assigned", exclude=actor.id,
    )
    deliver(notices, dispatcher)
    return task, notices


# ═════════════════════════════════════════════════════════════════════════════
# Dependency edges
# ═════════════════════════════════════════════════════════════════════════════


@atomic
def add_dependency(actor: User, task_id: int, depends_on_id: int):
    """
    Make ``task_id`` wait for ``depends_on_id``.

    Raises ConflictError for a self-dependency, a task of another project,
    a duplicate edge, or an edge that would close a cycle.
    """
    task = _load(actor, task_id)
    authorize(actor, Action.TASK_DEPENDENCY, task)

    if depends_on_id == task.id:
        raise ConflictError("Task", "depends_on_id", depends_on_id,
                            message="A task cannot depend on itself")
    dep = _task_in_project(task.project, depends_on_id, "depends_on_id")

    if any(link.depends_on_id == dep.id for link in task.dependency_links):
        raise ConflictError("TaskDependency", "depends_on_id", dep.id)
    if not validate_no_cycle(db.session, task.id, dep.id):
        raise ConflictError(
            "TaskDependency", "depends_on_id", dep.id,
            message="Dependency would create a cycle",
        )

    task.dependency_links.append(TaskDependency(depends_on=dep))
    _audit(task, "add_dependency", actor.id, {"depends_on_id": {"old": None, "new": dep.id}})
    commit_or_conflict("TaskDependency")
    logger.info("Dependency added task=%s depends_on=%s", task.id, dep.id)
    return task, []


@atomic
def remove_dependency(actor: User, task_id: int, depends_on_id: int):
    """Drop one edge. Neither task is deleted."""
    task = _load(actor, task_id)
    authorize(actor, Action.TASK_DEPENDENCY, task)

    link = next((ln for ln in task.dependency_links if ln.depends_on_id == depends_on_id), None)
    if link is None:
        raise NotFoundError("TaskDependency", depends_on_id)

    task.dependency_links.remove(link)
    _audit(task, "remove_dependency", actor.id, {"depends_on_id": {"old": depends_on_id, "new": None}})
    commit_or_conflict("TaskDependency")
    logger.info("Dependency removed task=%s depends_on=%s", task.id, depends_on_id)
    return task, []


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def list_tasks(actor: User, project_id: int, *, status: str | None = None,
               assignee_id: int | None = None, overdue: bool = False) -> list[Task]:
    project = get_scoped(Project, project_id, university_id=actor.university_id)
    authorize(actor, Action.TASK_VIEW, project)

    q = Task.query_for_university(project.university_id).filter_by(project_id=project.id)
    if status:
        q = q.filter_by(status=status)
    if assignee_id is not None:
        q = q.filter_by(assignee_id=assignee_id)
    tasks = q.order_by(Task.due_date.is_(None), Task.due_date, Task.id).all()
    if overdue:
        today = date.today()
        tasks = [t for t in tasks if t.is_overdue(today)]
    return tasks


def list_dependencies(actor: User, task_id: int) -> list[Task]:
    task = _load(actor, task_id, for_update=False)
    authorize(actor, Action.TASK_VIEW, task)
    return task.dependencies


def task_stats(actor: User, project_id: int) -> dict:
    """Counters for the project task board."""
    project = get_scoped(Project, project_id, university_id=actor.university_id)
    authorize(actor, Action.TASK_VIEW, project)
    tasks = list(project.tasks)
    today = date.today()
    by_status = {status: 0 for status in sorted(TASK_STATUSES)}
    for task in tasks:
        by_status[task.status] += 1

    return {
        "total": len(tasks),
        "completed": by_status["completed"],
        "pending": len(tasks) - by_status["completed"],
        "overdue": sum(1 for t in tasks if t.is_overdue(today)),
        "by_status": by_status,
        "progress_percentage": progress_percentage(project),
    }
