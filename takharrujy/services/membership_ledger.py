"""
Membership ledger: who is on which team.

Owns every TeamMembership row. The one rule everything else leans on:
a user holds at most one ACTIVE membership in the whole database (a
student works on one graduation project at a time). The service checks
it before writing and the partial unique index ``uq_membership_one_active``
rejects a racing second activation at commit.

Seat accounting: the leader plus at most ``MAX_TEAM_SIZE - 1`` members;
pending invitations hold a seat until they are declined or removed.

Operations used by the project lifecycle:
    add_leader, resolve_candidates, invite_members, replace_members, release_team
Team operations:
    invite_member, respond_to_invitation, remove_member, leave_project, list_members
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select

from takharrujy.core.exceptions import ConflictError, NotFoundError, ValidationError
from takharrujy.models import db
from takharrujy.models.audit import write_audit
from takharrujy.models.project import (
    MAX_TEAM_SIZE,
    MEMBERSHIP_TRANSITIONS,
    Project,
    TeamMembership,
)
from takharrujy.models.university import User
from takharrujy.services.access_policy import Action, authorize
from takharrujy.services.helpers.scoped_queries import get_scoped, get_scoped_or_none
from takharrujy.services.helpers.state_machine import next_status
from takharrujy.services.notification import deliver, notices_for
from takharrujy.utils.helpers import atomic, commit_or_conflict

logger = logging.getLogger(__name__)

MAX_ADDITIONAL_MEMBERS = MAX_TEAM_SIZE - 1
_SEAT_STATUSES = ("pending", "active")


def _now():
    return datetime.now(timezone.utc)


def _audit(membership: TeamMembership, action: str, actor_id, old_status, new_status):
    try:
        write_audit(
            entity_type="membership",
            entity_id=membership.id,
            action=f"membership.{action}",
            actor_user_id=actor_id,
            university_id=membership.university_id,
            project_id=membership.project_id,
            diff={"status": {"old": old_status, "new": new_status},
                  "user_id": membership.user_id},
        )
    except Exception:
        logger.warning("Audit log failed for membership %s; main flow unaffected", action, exc_info=True)


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════


def active_membership_for(user_id: int) -> TeamMembership | None:
    """The user's ACTIVE membership, if any."""
    stmt = select(TeamMembership).where(
        TeamMembership.user_id == user_id,
        TeamMembership.status == "active",
    )
    return db.session.execute(stmt).scalars().first()


def has_active_membership(user_id: int) -> bool:
    return active_membership_for(user_id) is not None


def seats_taken(project: Project) -> int:
    """Non-leader rows currently holding a seat (pending or active)."""
    stmt = select(func.count(TeamMembership.id)).where(
        TeamMembership.project_id == project.id,
        TeamMembership.role == "member",
        TeamMembership.status.in_(_SEAT_STATUSES),
    )
    return db.session.execute(stmt).scalar_one()


def active_member_ids(project: Project) -> list[int]:
    """User ids of the ACTIVE team, leader included."""
    return [m.user_id for m in project.memberships if m.status == "active"]


def team_recipient_ids(project: Project) -> list[int]:
    """Everyone who should hear about the project: active and invited."""
    return [m.user_id for m in project.memberships if m.status in _SEAT_STATUSES]


def membership_of(project: Project, user_id: int) -> TeamMembership | None:
    for membership in project.memberships:
        if membership.user_id == user_id:
            return membership
    return None


# ═════════════════════════════════════════════════════════════════════════════
# Building blocks used by the project lifecycle
# ═════════════════════════════════════════════════════════════════════════════


def resolve_candidates(leader: User, member_ids, *, field: str = "member_ids",
                       project: Project | None = None) -> list[User]:
    """
    Load and vet proposed team members.

    A seat already held on ``project`` does not count against a candidate.

    Raises:
        ValidationError: duplicate ids, the leader listed as a member,
            unknown / foreign-university users, non-students.
        ConflictError: more than MAX_ADDITIONAL_MEMBERS, or a candidate
            already on an active team.
    """
    member_ids = list(member_ids or [])
    if len(set(member_ids)) != len(member_ids):
        raise ValidationError("Duplicate team members", details={field: "contains duplicates"})
    if leader.id in member_ids:
        raise ValidationError(
            "The team leader cannot be added as a member",
            details={field: "must not include the leader"},
        )
    if len(member_ids) > MAX_ADDITIONAL_MEMBERS:
        raise ConflictError(
            "Project", "team_size", len(member_ids) + 1,
            message=f"A team has at most {MAX_TEAM_SIZE} members including the leader",
        )

    users = []
    for uid in member_ids:
        user = get_scoped_or_none(User, uid, university_id=leader.university_id)
        if user is None or not user.is_active:
            raise ValidationError(
                "All team members must be active users of the same university",
                details={field: f"user {uid} is not available"},
            )
        if not user.is_student:
            raise ValidationError(
                "Only students can be team members",
                details={field: f"user {uid} is not a student"},
            )
        current = active_membership_for(user.id)
        if current is not None and (project is None or current.project_id != project.id):
            raise ConflictError(
                "TeamMembership", "user_id", user.id,
                message=f"User {user.id} is already on an active project team",
            )
        users.append(user)
    return users


def add_leader(project: Project, leader: User) -> TeamMembership:
    """Give the leader their ACTIVE leader seat."""
    if has_active_membership(leader.id):
        raise ConflictError(
            "TeamMembership", "user_id", leader.id,
            message="You already have an active project",
        )
    membership = TeamMembership(
        university_id=project.university_id,
        user=leader,
        role="leader",
        status="active",
        invited_by_id=leader.id,
        joined_at=_now(),
    )
    project.memberships.append(membership)
    return membership


def invite_members(project: Project, inviter: User, users) -> list[TeamMembership]:
    """
    Open PENDING invitations for vetted ``users``.

    Rejected / removed rows for the same user are re-opened; a user who
    is already invited or active on this team is a ConflictError.
    """
    users = list(users)
    if seats_taken(project) + len(users) > MAX_ADDITIONAL_MEMBERS:
        raise ConflictError(
            "Project", "team_size", project.id,
            message=f"A team has at most {MAX_TEAM_SIZE} members including the leader",
        )

    invited = []
    for user in users:
        existing = membership_of(project, user.id)
        if existing is not None:
            old = existing.status
            existing.status = next_status(MEMBERSHIP_TRANSITIONS, existing, "reinvite", "TeamMembership")
            existing.invited_by_id = inviter.id
            existing.invited_at = _now()
            existing.joined_at = None
            existing.ended_at = None
            db.session.flush()
            _audit(existing, "reinvite", inviter.id, old, existing.status)
            invited.append(existing)
            continue

        membership = TeamMembership(
            university_id=project.university_id,
            user=user,
            role="member",
            status="pending",
            invited_by_id=inviter.id,
        )
        project.memberships.append(membership)
        db.session.flush()
        _audit(membership, "invite", inviter.id, None, "pending")
        invited.append(membership)
    return invited


def replace_members(project: Project, inviter: User, member_ids) -> list[TeamMembership]:
    """Drop every non-leader row and invite ``member_ids`` afresh."""
    users = resolve_candidates(project.leader, member_ids, project=project)
    for membership in [m for m in project.memberships if not m.is_leader]:
        project.memberships.remove(membership)
    db.session.flush()
    return invite_members(project, inviter, users)


def release_team(project: Project, actor_id=None) -> int:
    """Close every open seat of a finished project (-> inactive)."""
    released = 0
    for membership in project.memberships:
        if membership.status not in _SEAT_STATUSES:
            continue
        old = membership.status
        membership.status = next_status(MEMBERSHIP_TRANSITIONS, membership, "release", "TeamMembership")
        membership.ended_at = _now()
        _audit(membership, "release", actor_id, old, membership.status)
        released += 1
    logger.info("Team released project=%s memberships=%d", project.id, released)
    return released


# ═════════════════════════════════════════════════════════════════════════════
# Team operations
# ═════════════════════════════════════════════════════════════════════════════


@atomic
def invite_member(actor: User, project_id: int, user_id: int, *, dispatcher=None):
    """Leader invites one more student while the project is editable."""
    project = get_scoped(Project, project_id, university_id=actor.university_id, for_update=True)
    authorize(actor, Action.MEMBER_INVITE, project)

    existing = membership_of(project, user_id)
    if existing is not None and existing.status in _SEAT_STATUSES:
        raise ConflictError(
            "TeamMembership", "user_id", user_id,
            message="User is already invited to or on this team",
        )

    users = resolve_candidates(actor, [user_id], field="user_id")
    membership = invite_members(project, actor, users)[0]
    commit_or_conflict("TeamMembership")
    logger.info("Member invited project=%s user=%s by=%s", project.id, user_id, actor.id)

    notices = notices_for(
        [user_id], "Team invitation",
        f"You were invited to join the project '{project.title}'",
        kind="team_invitation",
    )
    deliver(notices, dispatcher)
    return membership, notices


@atomic
def respond_to_invitation(actor: User, membership_id: int, accept: bool, *, dispatcher=None):
    """The invited student accepts (-> active) or declines (-> rejected)."""
    membership = get_scoped(
        TeamMembership, membership_id, university_id=actor.university_id, for_update=True,
    )
    authorize(actor, Action.MEMBER_RESPOND, membership)

    action = "accept" if accept else "decline"
    new_status = next_status(MEMBERSHIP_TRANSITIONS, membership, action, "TeamMembership")
    project = membership.project

    if accept:
        if has_active_membership(actor.id):
            raise ConflictError(
                "TeamMembership", "user_id", actor.id,
                message="You already have an active project",
            )
        active_members = sum(
            1 for m in project.memberships if m.status == "active" and not m.is_leader
        )
        if active_members >= MAX_ADDITIONAL_MEMBERS:
            raise ConflictError(
                "Project", "team_size", project.id,
                message=f"A team has at most {MAX_TEAM_SIZE} members including the leader",
            )
        membership.joined_at = _now()
    else:
        membership.ended_at = _now()

    old = membership.status
    membership.status = new_status
    _audit(membership, action, actor.id, old, new_status)
    commit_or_conflict("TeamMembership")
    logger.info("Invitation %s membership=%s project=%s", action, membership.id, project.id)

    verb = "accepted" if accept else "declined"
    notices = notices_for(
        [project.leader_id], "Team invitation answered",
        f"{actor.full_name} {verb} the invitation to '{project.title}'",
        kind="team_invitation",
    )
    deliver(notices, dispatcher)
    return membership, notices


@atomic
def remove_member(actor: User, membership_id: int, *, dispatcher=None):
    """Leader removes a member or withdraws an invitation."""
    membership = get_scoped(
        TeamMembership, membership_id, university_id=actor.university_id, for_update=True,
    )
    authorize(actor, Action.MEMBER_REMOVE, membership)
    if membership.is_leader:
        raise ConflictError(
            "TeamMembership", "role", "leader", message="The team leader cannot be removed",
        )

    old = membership.status
    membership.status = next_status(MEMBERSHIP_TRANSITIONS, membership, "remove", "TeamMembership")
    membership.ended_at = _now()
    _audit(membership, "remove", actor.id, old, membership.status)
    commit_or_conflict("TeamMembership")
    logger.info("Member removed membership=%s project=%s", membership.id, membership.project_id)

    notices = notices_for(
        [membership.user_id], "Removed from team",
        f"You were removed from the project '{membership.project.title}'",
    )
    deliver(notices, dispatcher)
    return membership, notices


@atomic
def leave_project(actor: User, project_id: int, *, dispatcher=None):
    """A non-leader member gives up their seat."""
    project = get_scoped(Project, project_id, university_id=actor.university_id)
    membership = membership_of(project, actor.id)
    if membership is None:
        raise NotFoundError("TeamMembership", university_id=actor.university_id)
    authorize(actor, Action.MEMBER_LEAVE, membership)

    old = membership.status
    membership.status = next_status(MEMBERSHIP_TRANSITIONS, membership, "leave", "TeamMembership")
    membership.ended_at = _now()
    _audit(membership, "leave", actor.id, old, membership.status)
    commit_or_conflict("TeamMembership")
    logger.info("Member left membership=%s project=%s", membership.id, project.id)

    notices = notices_for(
        [project.leader_id], "Member left",
        f"{actor.full_name} left the project '{project.title}'",
    )
    deliver(notices, dispatcher)
    return membership, notices


def list_members(actor: User, project_id: int, *, include_closed: bool = False) -> list[TeamMembership]:
    project = get_scoped(Project, project_id, university_id=actor.university_id)
    authorize(actor, Action.PROJECT_VIEW, project)
    if include_closed:
        return list(project.memberships)
    return [m for m in project.memberships if m.status in _SEAT_STATUSES]
