"""
Tests for takharrujy/services/project_lifecycle.py

Covers the project state machine end to end:
    draft -> submitted -> approved -> in_progress -> completed
    submitted -> rejected

plus creation rules (team size, one active project per student,
preferred supervisor binding), draft-only team replacement, supervisor
administration, deletion and progress reporting.
"""

from datetime import date, timedelta

import pytest

from takharrujy.core.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from takharrujy.models import db
from takharrujy.models.project import Project, TeamMembership
from takharrujy.models.task import Task, TaskDependency
from takharrujy.services import project_lifecycle as pl
from takharrujy.services import task_graph as tg
from takharrujy.services.membership_ledger import has_active_membership


def _statuses(project):
    return {m.user_id: m.status for m in project.memberships}


# ═════════════════════════════════════════════════════════════════════════════
# Create
# ═════════════════════════════════════════════════════════════════════════════


class TestCreateProject:
    def test_draft_invites_members_and_binds_preferred_supervisor(
        self, leader, students, supervisor, project_payload, dispatcher,
    ):
        project, notices = pl.create_project(
            leader,
            project_payload(
                member_ids=[students[0].id, students[1].id],
                preferred_supervisor_id=supervisor.id,
            ),
            dispatcher=dispatcher,
        )

        assert project.status == "draft"
        assert project.supervisor_id == supervisor.id
        assert project.preferred_supervisor_id == supervisor.id
        assert _statuses(project) == {
            leader.id: "active",
            students[0].id: "pending",
            students[1].id: "pending",
        }
        leader_row = next(m for m in project.memberships if m.user_id == leader.id)
        assert leader_row.role == "leader"
        assert {n.recipient_id for n in notices} == {students[0].id, students[1].id}
        assert dispatcher.recipients() == {students[0].id, students[1].id}

    def test_direct_submission_records_preference_only(
        self, leader, supervisor, project_payload, dispatcher,
    ):
        project, _ = pl.create_project(
            leader,
            project_payload(preferred_supervisor_id=supervisor.id, save_as_draft=False),
            dispatcher=dispatcher,
        )

        assert project.status == "submitted"
        assert project.supervisor_id is None
        assert project.preferred_supervisor_id == supervisor.id
        assert supervisor.id in dispatcher.recipients()

    def test_direct_submission_checks_submission_fields(self, leader, project_payload):
        with pytest.raises(ValidationError) as exc:
            pl.create_project(leader, project_payload(description="short", save_as_draft=False))
        assert "description" in exc.value.details

    def test_supervisor_cannot_create(self, supervisor, project_payload):
        with pytest.raises(ForbiddenError):
            pl.create_project(supervisor, project_payload())

    def test_admin_cannot_create(self, admin, project_payload):
        with pytest.raises(ForbiddenError):
            pl.create_project(admin, project_payload())
        assert Project.query.count() == 0

    def test_leader_with_active_project_cannot_create_second(self, draft_project, leader, project_payload):
        with pytest.raises(ConflictError):
            pl.create_project(leader, project_payload(title="Second idea"))
        assert Project.query.count() == 1

    def test_more_than_three_members_is_conflict(self, leader, students, project_payload):
        with pytest.raises(ConflictError):
            pl.create_project(leader, project_payload(member_ids=[s.id for s in students]))

    def test_member_of_other_university_is_rejected(
        self, leader, other_university, make_user, project_payload,
    ):
        outsider = make_user(other_university, "student")
        with pytest.raises(ValidationError) as exc:
            pl.create_project(leader, project_payload(member_ids=[outsider.id]))
        assert "member_ids" in exc.value.details

    def test_member_must_be_student(self, leader, supervisor, project_payload):
        with pytest.raises(ValidationError):
            pl.create_project(leader, project_payload(member_ids=[supervisor.id]))

    def test_member_on_active_team_is_conflict(self, draft_project, students, university,
                                               make_user, project_payload):
        other_leader = make_user(university, "student")
        with pytest.raises(ConflictError):
            pl.create_project(other_leader, project_payload(member_ids=[students[0].id]))

    def test_leader_listed_as_member_is_rejected(self, leader, project_payload):
        with pytest.raises(ValidationError):
            pl.create_project(leader, project_payload(member_ids=[leader.id]))

    def test_due_before_start_is_rejected(self, leader, project_payload):
        today = date.today()
        with pytest.raises(ValidationError) as exc:
            pl.create_project(leader, project_payload(
                start_date=today.isoformat(),
                due_date=(today - timedelta(days=1)).isoformat(),
            ))
        assert "due_date" in exc.value.details

    def test_blank_title_is_rejected(self, leader, project_payload):
        with pytest.raises(ValidationError) as exc:
            pl.create_project(leader, project_payload(title="   "))
        assert exc.value.details == {"title": "required"}

    def test_preferred_supervisor_must_supervise(self, leader, students, project_payload):
        with pytest.raises(ValidationError):
            pl.create_project(leader, project_payload(preferred_supervisor_id=students[0].id))


# ═════════════════════════════════════════════════════════════════════════════
# Submit / decide
# ═════════════════════════════════════════════════════════════════════════════


class TestReviewWorkflow:
    def test_submit_approve_scenario(self, leader, students, supervisor, other_supervisor,
                                     project_payload, dispatcher):
        project, _ = pl.create_project(
            leader,
            project_payload(
                member_ids=[students[0].id, students[1].id],
                preferred_supervisor_id=supervisor.id,
            ),
            dispatcher=dispatcher,
        )
        dispatcher.sent.clear()

        project, _ = pl.submit_project(leader, project.id, dispatcher=dispatcher)
        assert project.status == "submitted"
        assert dispatcher.recipients() == {students[0].id, students[1].id, supervisor.id}

        with pytest.raises(ForbiddenError):
            pl.decide_project(other_supervisor, project.id, True)

        project, _ = pl.decide_project(supervisor, project.id, True, dispatcher=dispatcher)
        assert project.status == "approved"
        assert project.supervisor_id == supervisor.id

        with pytest.raises(ConflictError):
            pl.decide_project(supervisor, project.id, True)

    def test_submit_requires_complete_fields(self, leader, project_payload):
        project, _ = pl.create_project(
            leader, project_payload(description="Too short", start_date=None),
        )
        with pytest.raises(ValidationError) as exc:
            pl.submit_project(leader, project.id)
        assert set(exc.value.details) == {"description", "start_date"}
        assert db.session.get(Project, project.id).status == "draft"

    def test_only_leader_submits(self, draft_project, students):
        with pytest.raises(ForbiddenError):
            pl.submit_project(students[0], draft_project.id)

    def test_submit_twice_is_forbidden(self, draft_project, leader):
        pl.submit_project(leader, draft_project.id)
        with pytest.raises(ForbiddenError):
            pl.submit_project(leader, draft_project.id)

    def test_unbound_project_can_be_decided_by_any_supervisor(self, draft_project, leader,
                                                                other_supervisor):
        pl.submit_project(leader, draft_project.id)
        project, _ = pl.decide_project(other_supervisor, draft_project.id, True)
        assert project.supervisor_id == other_supervisor.id

    def test_decision_on_draft_is_conflict(self, draft_project, supervisor):
        with pytest.raises(TransitionError):
            pl.decide_project(supervisor, draft_project.id, True)

    def test_reject_leaves_supervisor_unset_and_releases_team(
        self, draft_project, leader, students, supervisor, project_payload, dispatcher,
    ):
        pl.submit_project(leader, draft_project.id)
        project, _ = pl.decide_project(
            supervisor, draft_project.id, False, feedback="Scope too wide", dispatcher=dispatcher,
        )

        assert project.status == "rejected"
        assert project.supervisor_id is None
        assert project.supervisor_feedback == "Scope too wide"
        assert set(_statuses(project).values()) == {"inactive"}
        assert dispatcher.recipients() == {leader.id, students[0].id, students[1].id}

        assert not has_active_membership(leader.id)
        second, _ = pl.create_project(leader, project_payload(member_ids=[students[0].id]))
        assert second.status == "draft"

    def test_reject_twice_is_conflict(self, draft_project, leader, supervisor):
        pl.submit_project(leader, draft_project.id)
        pl.decide_project(supervisor, draft_project.id, False)
        with pytest.raises(ConflictError):
            pl.decide_project(supervisor, draft_project.id, False)

    def test_student_cannot_decide(self, draft_project, leader):
        pl.submit_project(leader, draft_project.id)
        with pytest.raises(ForbiddenError):
            pl.decide_project(leader, draft_project.id, True)


# ═════════════════════════════════════════════════════════════════════════════
# Update
# ═════════════════════════════════════════════════════════════════════════════


class TestUpdateProject:
    def test_non_null_fields_are_applied(self, draft_project, leader):
        project, _ = pl.update_project(
            leader, draft_project.id, {"title": "Renamed", "description": None, "title_ar": "مشروع"},
        )
        assert project.title == "Renamed"
        assert project.title_ar == "مشروع"
        assert len(project.description) > 50

    def test_draft_team_is_replaced(self, draft_project, leader, students, dispatcher):
        dispatcher.sent.clear()
        project, _ = pl.update_project(
            leader, draft_project.id, {"member_ids": [students[2].id]}, dispatcher=dispatcher,
        )
        assert _statuses(project) == {leader.id: "active", students[2].id: "pending"}
        assert not has_active_membership(students[0].id)
        assert dispatcher.recipients() == {students[2].id}

    def test_team_change_outside_draft_is_rejected(self, approved_project, leader, students):
        pl.start_project(leader, approved_project.id)
        with pytest.raises(ValidationError):
            pl.update_project(leader, approved_project.id, {"member_ids": [students[2].id]})

    def test_submitted_project_is_not_editable(self, draft_project, leader):
        pl.submit_project(leader, draft_project.id)
        with pytest.raises(ForbiddenError):
            pl.update_project(leader, draft_project.id, {"title": "Late change"})

    def test_member_cannot_edit(self, draft_project, students):
        with pytest.raises(ForbiddenError):
            pl.update_project(students[0], draft_project.id, {"title": "Mine now"})

    def test_date_range_checked_against_stored_dates(self, draft_project, leader):
        too_early = (draft_project.start_date - timedelta(days=1)).isoformat()
        with pytest.raises(ValidationError):
            pl.update_project(leader, draft_project.id, {"due_date": too_early})

    def test_admin_cannot_edit_submitted_project(self, draft_project, leader, admin):
        pl.submit_project(leader, draft_project.id)
        with pytest.raises(ForbiddenError):
            pl.update_project(admin, draft_project.id, {"title": "Admin change"})

    def test_failed_update_changes_nothing(self, draft_project, leader):
        original_title = draft_project.title
        too_early = (draft_project.start_date - timedelta(days=1)).isoformat()
        with pytest.raises(ValidationError):
            pl.update_project(leader, draft_project.id, {"title": "Renamed", "due_date": too_early})

        db.session.commit()
        db.session.expire_all()
        assert db.session.get(Project, draft_project.id).title == original_title

    def test_failed_team_replacement_keeps_team(self, draft_project, leader, students, supervisor):
        with pytest.raises(ValidationError):
            pl.update_project(
                leader, draft_project.id,
                {"title": "Renamed", "member_ids": [students[2].id, supervisor.id]},
            )

        db.session.commit()
        db.session.expire_all()
        project = db.session.get(Project, draft_project.id)
        assert project.title != "Renamed"
        assert _statuses(project) == {
            leader.id: "active", students[0].id: "active", students[1].id: "active",
        }
        assert has_active_membership(students[0].id)

    def test_replacement_may_keep_current_members(self, draft_project, leader, students):
        project, _ = pl.update_project(
            leader, draft_project.id, {"member_ids": [students[0].id, students[2].id]},
        )
        assert _statuses(project) == {
            leader.id: "active", students[0].id: "pending", students[2].id: "pending",
        }


# ═════════════════════════════════════════════════════════════════════════════
# Start / complete / feedback / supervisor / delete
# ═════════════════════════════════════════════════════════════════════════════


class TestRunningProject:
    def test_start_then_complete(self, approved_project, leader, supervisor, students):
        project, _ = pl.start_project(leader, approved_project.id)
        assert project.status == "in_progress"

        project, _ = pl.complete_project(supervisor, approved_project.id)
        assert project.status == "completed"
        assert project.completion_date == date.today()
        assert set(_statuses(project).values()) == {"inactive"}
        assert not has_active_membership(students[0].id)

    def test_student_cannot_complete(self, approved_project, leader):
        pl.start_project(leader, approved_project.id)
        with pytest.raises(ForbiddenError):
            pl.complete_project(leader, approved_project.id)

    def test_complete_requires_in_progress(self, approved_project, supervisor):
        with pytest.raises(TransitionError):
            pl.complete_project(supervisor, approved_project.id)

    def test_supervisor_feedback(self, approved_project, supervisor, leader, students, dispatcher):
        project, _ = pl.give_project_feedback(
            supervisor, approved_project.id, "Good start", "بداية جيدة", dispatcher=dispatcher,
        )
        assert project.supervisor_feedback == "Good start"
        assert project.supervisor_feedback_ar == "بداية جيدة"
        assert project.status == "approved"
        assert dispatcher.recipients() == {leader.id, students[0].id, students[1].id}

    def test_feedback_needs_text(self, approved_project, supervisor):
        with pytest.raises(ValidationError):
            pl.give_project_feedback(supervisor, approved_project.id, "  ", None)

    def test_feedback_not_allowed_before_approval(self, leader, supervisor, project_payload):
        project, _ = pl.create_project(leader, project_payload(preferred_supervisor_id=supervisor.id))
        with pytest.raises(ForbiddenError):
            pl.give_project_feedback(supervisor, project.id, "Too early")

    def test_admin_assigns_supervisor(self, draft_project, admin, other_supervisor, leader, dispatcher):
        dispatcher.sent.clear()
        project, _ = pl.assign_supervisor(admin, draft_project.id, other_supervisor.id,
                                          dispatcher=dispatcher)
        assert project.supervisor_id == other_supervisor.id
        assert dispatcher.recipients() == {other_supervisor.id, leader.id}

    def test_assign_supervisor_is_admin_only(self, draft_project, leader, supervisor):
        with pytest.raises(ForbiddenError):
            pl.assign_supervisor(leader, draft_project.id, supervisor.id)

    def test_assign_supervisor_requires_supervisor_role(self, draft_project, admin, students):
        with pytest.raises(ValidationError):
            pl.assign_supervisor(admin, draft_project.id, students[3].id)

    def test_progress_percentage(self, approved_project, leader):
        tasks = [
            tg.create_task(leader, approved_project.id, {"title": f"Task {i}", "assignee_id": leader.id})[0]
            for i in range(4)
        ]
        assert pl.progress_percentage(approved_project) == 0
        tg.complete_task(leader, tasks[0].id)
        assert pl.progress_percentage(approved_project) == 25

    def test_progress_without_tasks_is_zero(self, draft_project):
        assert pl.progress_percentage(draft_project) == 0

    def test_overview(self, approved_project, leader):
        overview = pl.project_overview(leader, approved_project.id)
        assert overview["team_size"] == 3
        assert overview["progress_percentage"] == 0
        assert overview["available_actions"] == ["start"]


class TestDeleteProject:
    def test_leader_deletes_draft_with_children(self, draft_project, leader):
        t1, _ = tg.create_task(leader, draft_project.id, {"title": "Design"})
        tg.create_task(leader, draft_project.id, {"title": "Build", "dependency_ids": [t1.id]})
        project_id = draft_project.id

        pl.delete_project(leader, project_id)

        assert db.session.get(Project, project_id) is None
        assert TeamMembership.query.count() == 0
        assert Task.query.count() == 0
        assert TaskDependency.query.count() == 0
        assert not has_active_membership(leader.id)

    def test_leader_cannot_delete_after_submission(self, draft_project, leader):
        pl.submit_project(leader, draft_project.id)
        with pytest.raises(ForbiddenError):
            pl.delete_project(leader, draft_project.id)

    def test_admin_deletes_any_project(self, approved_project, admin):
        pl.delete_project(admin, approved_project.id)
        assert Project.query.count() == 0


class TestTenantScope:
    def test_foreign_project_is_not_found(self, draft_project, other_university, make_user):
        foreign_admin = make_user(other_university, "admin")
        with pytest.raises(NotFoundError):
            pl.get_project(foreign_admin, draft_project.id)

    def test_inactive_university_denies(self, draft_project, leader, university):
        university.is_active = False
        db.session.commit()
        with pytest.raises(ForbiddenError):
            pl.get_project(leader, draft_project.id)
