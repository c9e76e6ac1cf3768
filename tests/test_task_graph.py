"""
Tests for takharrujy/services/task_graph.py

Dependency-gated start, the direct status override table, dependency
edge rules (self, cross-project, duplicate, cycle), task CRUD rules and
the board queries.
"""

from datetime import date, timedelta

import pytest

from takharrujy.core.exceptions import (
    ConflictError,
    DependencyNotReadyError,
    ForbiddenError,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from takharrujy.models import db
from takharrujy.models.project import Project
from takharrujy.models.task import Task, TaskDependency
from takharrujy.services import project_lifecycle as pl
from takharrujy.services import task_graph as tg


def _task(actor, project, title, **extra):
    data = {"title": title}
    data.update(extra)
    task, _ = tg.create_task(actor, project.id, data)
    return task


# ═════════════════════════════════════════════════════════════════════════════
# Start / complete
# ═════════════════════════════════════════════════════════════════════════════


class TestDependencyGatedStart:
    def test_start_waits_for_dependencies(self, approved_project, leader, students, dispatcher):
        member = students[0]
        t2 = _task(leader, approved_project, "Collect requirements", assignee_id=member.id)
        t1 = _task(leader, approved_project, "Write design", assignee_id=member.id,
                   dependency_ids=[t2.id])

        with pytest.raises(DependencyNotReadyError) as exc:
            tg.start_task(member, t1.id)
        assert exc.value.pending_ids == [t2.id]
        assert isinstance(exc.value, ConflictError)
        assert db.session.get(Task, t1.id).status == "todo"

        tg.complete_task(member, t2.id)
        task, notices = tg.start_task(member, t1.id, dispatcher=dispatcher)

        assert task.status == "in_progress"
        assert task.start_date == date.today()
        assert db.session.get(Project, approved_project.id).status == "in_progress"
        assert [n.recipient_id for n in notices] == [leader.id]
        assert dispatcher.recipients() == {leader.id}

    def test_can_start_without_dependencies(self, approved_project, leader):
        task = _task(leader, approved_project, "Standalone")
        assert tg.can_start(task)
        assert tg.pending_dependency_ids(task) == []

    def test_only_assignee_starts(self, approved_project, leader, students):
        task = _task(leader, approved_project, "Survey", assignee_id=students[0].id)
        with pytest.raises(ForbiddenError):
            tg.start_task(students[1], task.id)
        with pytest.raises(ForbiddenError):
            tg.start_task(leader, task.id)

    def test_status_is_checked_before_readiness(self, approved_project, leader, students):
        member = students[0]
        dep = _task(leader, approved_project, "First", assignee_id=member.id)
        task = _task(leader, approved_project, "Second", assignee_id=member.id,
                     dependency_ids=[dep.id])
        tg.update_task_status(member, task.id, "blocked")

        with pytest.raises(TransitionError) as exc:
            tg.start_task(member, task.id)
        assert not isinstance(exc.value, DependencyNotReadyError)

    def test_start_twice_is_conflict(self, approved_project, leader):
        task = _task(leader, approved_project, "Prototype", assignee_id=leader.id)
        tg.start_task(leader, task.id)
        with pytest.raises(TransitionError):
            tg.start_task(leader, task.id)

    def test_complete_sets_completion_fields(self, approved_project, leader, students):
        member = students[1]
        task = _task(leader, approved_project, "Report", assignee_id=member.id)
        task, _ = tg.complete_task(member, task.id)
        assert task.status == "completed"
        assert task.completion_date == date.today()
        assert task.progress_percentage == 100

    def test_blocked_task_can_be_completed(self, approved_project, leader):
        task = _task(leader, approved_project, "Survey", assignee_id=leader.id)
        tg.update_task_status(leader, task.id, "blocked")
        task, _ = tg.complete_task(leader, task.id)
        assert task.status == "completed"
        assert task.progress_percentage == 100

    def test_complete_unassigned_task_is_conflict(self, approved_project, leader, admin):
        task = _task(leader, approved_project, "Unowned")
        with pytest.raises(ConflictError):
            tg.complete_task(admin, task.id)


# ═════════════════════════════════════════════════════════════════════════════
# Direct status override
# ═════════════════════════════════════════════════════════════════════════════


class TestUpdateTaskStatus:
    def test_unknown_status_is_rejected(self, approved_project, leader):
        task = _task(leader, approved_project, "Poster", assignee_id=leader.id)
        with pytest.raises(ValidationError):
            tg.update_task_status(leader, task.id, "done")

    def test_disallowed_move_is_conflict(self, approved_project, leader):
        task = _task(leader, approved_project, "Poster", assignee_id=leader.id)
        with pytest.raises(TransitionError) as exc:
            tg.update_task_status(leader, task.id, "completed")
        assert exc.value.action == "set_completed"

    def test_same_status_is_noop(self, approved_project, leader):
        task = _task(leader, approved_project, "Poster", assignee_id=leader.id)
        version = task.version
        task, notices = tg.update_task_status(leader, task.id, "todo")
        assert notices == []
        assert task.version == version

    def test_override_is_not_gated_by_readiness(self, approved_project, leader, students):
        member = students[0]
        dep = _task(leader, approved_project, "Dependency", assignee_id=member.id)
        task = _task(leader, approved_project, "Dependent", assignee_id=member.id,
                     dependency_ids=[dep.id])
        tg.update_task_status(member, task.id, "blocked")
        task, _ = tg.update_task_status(member, task.id, "in_progress")

        assert task.status == "in_progress"
        assert db.session.get(Project, approved_project.id).status == "in_progress"

    def test_reopening_clears_completion_and_progress(self, approved_project, leader):
        task = _task(leader, approved_project, "Slides", assignee_id=leader.id)
        tg.complete_task(leader, task.id)
        task, _ = tg.update_task_status(leader, task.id, "in_progress")
        assert task.completion_date is None
        assert task.progress_percentage == 0


# ═════════════════════════════════════════════════════════════════════════════
# Dependency edges
# ═════════════════════════════════════════════════════════════════════════════


class TestDependencies:
    def test_self_dependency_is_conflict(self, approved_project, leader):
        task = _task(leader, approved_project, "Alone")
        with pytest.raises(ConflictError):
            tg.add_dependency(leader, task.id, task.id)

    def test_cross_project_dependency_is_conflict(self, approved_project, leader, university,
                                                  make_user, project_payload):
        other_leader = make_user(university, "student")
        other, _ = pl.create_project(other_leader, project_payload(title="Other project"))
        foreign = _task(other_leader, other, "Foreign")
        task = _task(leader, approved_project, "Local")

        with pytest.raises(ConflictError):
            tg.add_dependency(leader, task.id, foreign.id)

    def test_missing_dependency_is_not_found(self, approved_project, leader):
        task = _task(leader, approved_project, "Local")
        with pytest.raises(NotFoundError):
            tg.add_dependency(leader, task.id, 999999)

    def test_duplicate_edge_is_conflict(self, approved_project, leader):
        a = _task(leader, approved_project, "A")
        b = _task(leader, approved_project, "B")
        tg.add_dependency(leader, a.id, b.id)
        with pytest.raises(ConflictError):
            tg.add_dependency(leader, a.id, b.id)

    def test_cycle_is_rejected(self, approved_project, leader):
        a = _task(leader, approved_project, "A")
        b = _task(leader, approved_project, "B")
        c = _task(leader, approved_project, "C")
        tg.add_dependency(leader, a.id, b.id)
        tg.add_dependency(leader, b.id, c.id)

        with pytest.raises(ConflictError):
            tg.add_dependency(leader, c.id, a.id)
        assert TaskDependency.query.count() == 2

    def test_any_active_member_manages_edges(self, approved_project, leader, students):
        a = _task(leader, approved_project, "A")
        b = _task(leader, approved_project, "B")
        task, _ = tg.add_dependency(students[1], a.id, b.id)
        assert [d.id for d in tg.list_dependencies(students[1], a.id)] == [b.id]

    def test_outsider_cannot_manage_edges(self, approved_project, leader, students):
        a = _task(leader, approved_project, "A")
        b = _task(leader, approved_project, "B")
        with pytest.raises(ForbiddenError):
            tg.add_dependency(students[3], a.id, b.id)

    def test_remove_dependency_keeps_tasks(self, approved_project, leader):
        a = _task(leader, approved_project, "A")
        b = _task(leader, approved_project, "B", dependency_ids=[a.id])
        tg.remove_dependency(leader, b.id, a.id)

        assert TaskDependency.query.count() == 0
        assert Task.query.count() == 2
        assert tg.can_start(db.session.get(Task, b.id))

    def test_remove_missing_edge_is_not_found(self, approved_project, leader):
        a = _task(leader, approved_project, "A")
        b = _task(leader, approved_project, "B")
        with pytest.raises(NotFoundError):
            tg.remove_dependency(leader, a.id, b.id)


# ═════════════════════════════════════════════════════════════════════════════
# Create / update / assign / delete
# ═════════════════════════════════════════════════════════════════════════════


class TestTaskCrud:
    def test_assignee_must_be_active_member(self, approved_project, leader, students):
        with pytest.raises(ValidationError) as exc:
            _task(leader, approved_project, "Outsider work", assignee_id=students[3].id)
        assert "assignee_id" in exc.value.details

    def test_title_unique_per_project_ignoring_case(self, approved_project, leader):
        _task(leader, approved_project, "Testing")
        with pytest.raises(ConflictError):
            _task(leader, approved_project, "TESTING")

    def test_only_leader_creates(self, approved_project, students):
        with pytest.raises(ForbiddenError):
            _task(students[0], approved_project, "Sneaky")

    def test_invalid_priority(self, approved_project, leader):
        with pytest.raises(ValidationError):
            _task(leader, approved_project, "Odd", priority="urgent")

    def test_create_notifies_assignee(self, approved_project, leader, students, dispatcher):
        task, notices = tg.create_task(
            leader, approved_project.id,
            {"title": "Interviews", "assignee_id": students[0].id, "priority": "high"},
            dispatcher=dispatcher,
        )
        assert task.priority == "high"
        assert dispatcher.recipients() == {students[0].id}
        assert notices[0].kind == "task_assigned"

    def test_assign_task(self, approved_project, leader, students, dispatcher):
        task = _task(leader, approved_project, "Review")
        task, _ = tg.assign_task(leader, task.id, students[1].id, dispatcher=dispatcher)
        assert task.assignee_id == students[1].id
        assert dispatcher.recipients() == {students[1].id}

    def test_member_cannot_assign(self, approved_project, leader, students):
        task = _task(leader, approved_project, "Review")
        with pytest.raises(ForbiddenError):
            tg.assign_task(students[0], task.id, students[0].id)

    def test_assignee_edits_task(self, approved_project, leader, students):
        task = _task(leader, approved_project, "Notes", assignee_id=students[0].id)
        task, _ = tg.update_task(students[0], task.id, {"progress_percentage": 40,
                                                        "description": "Half way"})
        assert task.progress_percentage == 40
        assert task.description == "Half way"

    def test_other_member_cannot_edit(self, approved_project, leader, students):
        task = _task(leader, approved_project, "Notes", assignee_id=students[0].id)
        with pytest.raises(ForbiddenError):
            tg.update_task(students[1], task.id, {"title": "Mine"})

    def test_progress_out_of_range(self, approved_project, leader):
        task = _task(leader, approved_project, "Notes")
        with pytest.raises(ValidationError):
            tg.update_task(leader, task.id, {"progress_percentage": 150})

    def test_failed_update_leaves_task_unchanged(self, approved_project, leader):
        task = _task(leader, approved_project, "Notes", description="Draft")
        with pytest.raises(ValidationError):
            tg.update_task(leader, task.id, {"title": "Renamed", "description": "Changed",
                                             "progress_percentage": 150})
        db.session.commit()
        db.session.expire_all()
        stored = db.session.get(Task, task.id)
        assert stored.title == "Notes"
        assert stored.description == "Draft"

    def test_parent_loop_is_rejected(self, approved_project, leader):
        parent = _task(leader, approved_project, "Epic")
        child = _task(leader, approved_project, "Story", parent_id=parent.id)
        with pytest.raises(ValidationError):
            tg.update_task(leader, parent.id, {"parent_id": child.id})

    def test_delete_leaf_task(self, approved_project, leader):
        task = _task(leader, approved_project, "Scratch")
        tg.delete_task(leader, task.id)
        assert Task.query.count() == 0

    def test_delete_task_with_dependents_is_conflict(self, approved_project, leader):
        a = _task(leader, approved_project, "A")
        _task(leader, approved_project, "B", dependency_ids=[a.id])
        with pytest.raises(ConflictError):
            tg.delete_task(leader, a.id)

    def test_only_creator_deletes(self, approved_project, leader, students):
        task = _task(leader, approved_project, "Scratch", assignee_id=students[0].id)
        with pytest.raises(ForbiddenError):
            tg.delete_task(students[0], task.id)


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


class TestTaskQueries:
    def test_list_filters(self, approved_project, leader, students):
        yesterday = (date.today() - timedelta(days=1)).isoformat()
        late = _task(leader, approved_project, "Late", due_date=yesterday)
        mine = _task(leader, approved_project, "Mine", assignee_id=students[0].id)

        assert [t.id for t in tg.list_tasks(students[1], approved_project.id, overdue=True)] == [late.id]
        assert [t.id for t in tg.list_tasks(leader, approved_project.id,
                                            assignee_id=students[0].id)] == [mine.id]
        assert len(tg.list_tasks(leader, approved_project.id, status="todo")) == 2

    def test_outsider_cannot_list(self, approved_project, students):
        with pytest.raises(ForbiddenError):
            tg.list_tasks(students[3], approved_project.id)

    def test_stats(self, approved_project, leader):
        yesterday = (date.today() - timedelta(days=1)).isoformat()
        done = _task(leader, approved_project, "Done", assignee_id=leader.id)
        _task(leader, approved_project, "Late", due_date=yesterday)
        _task(leader, approved_project, "Open")
        tg.complete_task(leader, done.id)

        stats = tg.task_stats(leader, approved_project.id)
        assert stats["total"] == 3
        assert stats["completed"] == 1
        assert stats["pending"] == 2
        assert stats["overdue"] == 1
        assert stats["by_status"]["todo"] == 2
        assert stats["progress_percentage"] == 33
