"""
Takharrujy workflow core
Task domain models.

Models:
    - Task: unit of project work, optionally assigned to an active team member
    - TaskDependency: "task waits for depends_on" edge inside one project

The dependency graph is kept acyclic: every new edge is checked with
``validate_no_cycle`` before it is added.
"""

from datetime import date, datetime, timezone

from takharrujy.models import db
from takharrujy.models.base import UniversityModel

# ── Constants ────────────────────────────────────────────────────────────────

TASK_STATUSES = {"todo", "in_progress", "blocked", "completed"}
TASK_PRIORITIES = {"low", "medium", "high", "critical"}

# Lifecycle actions with a readiness or assignee rule of their own.
TASK_TRANSITIONS = {
    "start": {"from": ["todo"], "to": "in_progress"},
    "complete": {"from": ["todo", "in_progress", "blocked"], "to": "completed"},
}

# Direct status override by the assignee; not gated by readiness.
TASK_STATUS_TRANSITIONS = {
    "todo": ["in_progress", "blocked"],
    "in_progress": ["completed", "blocked"],
    "blocked": ["in_progress", "todo"],
    "completed": ["in_progress"],
}


def _utcnow():
    return datetime.now(timezone.utc)


def validate_no_cycle(session, task_id, new_dependency_id):
    """
    Check that making task_id wait for new_dependency_id does not create a cycle.

    Walks the existing edges forward from new_dependency_id with an
    iterative DFS. Returns True if safe, False if task_id is reachable.
    """
    if task_id == new_dependency_id:
        return False

    visited = set()
    stack = [new_dependency_id]

    while stack:
        current = stack.pop()
        if current == task_id:
            return False
        if current in visited:
            continue
        visited.add(current)

        deps = (
            session.query(TaskDependency.depends_on_id)
            .filter(TaskDependency.task_id == current)
            .all()
        )
        for (dep_id,) in deps:
            stack.append(dep_id)

    return True


class Task(UniversityModel):
    """Project task. ``completion_date`` is set exactly when status is completed."""

    __tablename__ = "tasks"
    __table_args__ = (
        db.Index("ix_tasks_project_status", "project_id", "status"),
        db.CheckConstraint(
            "progress_percentage >= 0 AND progress_percentage <= 100",
            name="ck_task_progress_range",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    parent_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True,
    )
    title = db.Column(db.String(200), nullable=False)
    title_ar = db.Column(db.String(200), nullable=True)
    description = db.Column(db.Text, default="")
    description_ar = db.Column(db.Text, nullable=True)
    priority = db.Column(db.String(10), nullable=False, default="medium",
                         comment="low | medium | high | critical")
    status = db.Column(db.String(20), nullable=False, default="todo",
                       comment="todo | in_progress | blocked | completed")

    assignee_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    created_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )

    start_date = db.Column(db.Date, nullable=True)
    due_date = db.Column(db.Date, nullable=True)
    completion_date = db.Column(db.Date, nullable=True)
    progress_percentage = db.Column(db.Integer, nullable=False, default=0)
    estimated_hours = db.Column(db.Integer, nullable=True)
    is_milestone = db.Column(db.Boolean, nullable=False, default=False)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    project = db.relationship("Project", back_populates="tasks")
    assignee = db.relationship("User", foreign_keys=[assignee_id])
    created_by = db.relationship("User", foreign_keys=[created_by_id])
    parent = db.relationship("Task", remote_side=[id], backref="subtasks")
    dependency_links = db.relationship(
        "TaskDependency",
        foreign_keys="TaskDependency.task_id",
        back_populates="task",
        cascade="all, delete-orphan",
    )
    dependent_links = db.relationship(
        "TaskDependency",
        foreign_keys="TaskDependency.depends_on_id",
        back_populates="depends_on",
        cascade="all, delete-orphan",
    )

    @property
    def dependencies(self) -> list["Task"]:
        return [link.depends_on for link in self.dependency_links]

    def is_overdue(self, today: date | None = None) -> bool:
        today = today or date.today()
        return bool(self.due_date and self.due_date < today and self.status != "completed")

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "parent_id": self.parent_id,
            "title": self.title,
            "title_ar": self.title_ar,
            "description": self.description,
            "description_ar": self.description_ar,
            "priority": self.priority,
            "status": self.status,
            "assignee_id": self.assignee_id,
            "created_by_id": self.created_by_id,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "completion_date": self.completion_date.isoformat() if self.completion_date else None,
            "progress_percentage": self.progress_percentage,
            "estimated_hours": self.estimated_hours,
            "is_milestone": self.is_milestone,
            "dependency_ids": [link.depends_on_id for link in self.dependency_links],
            "version": self.version,
        }

    def __repr__(self):
        return f"<Task {self.id}: {self.title} [{self.status}]>"


class TaskDependency(db.Model):
    """
    Edge: ``task`` cannot start until ``depends_on`` is completed.

    Both ends belong to the same project (enforced by the task graph service).
    """

    __tablename__ = "task_dependencies"
    __table_args__ = (
        db.UniqueConstraint("task_id", "depends_on_id", name="uq_task_dependency"),
        db.CheckConstraint("task_id != depends_on_id", name="ck_dep_no_self_loop"),
    )

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    depends_on_id = db.Column(
        db.Integer, db.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    task = db.relationship("Task", foreign_keys=[task_id], back_populates="dependency_links")
    depends_on = db.relationship("Task", foreign_keys=[depends_on_id], back_populates="dependent_links")

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "depends_on_id": self.depends_on_id,
        }

    def __repr__(self):
        return f"<TaskDependency {self.task_id} -> {self.depends_on_id}>"
