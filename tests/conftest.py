"""
Shared pytest fixtures for the workflow core test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - university / other_university: tenant roots
    - make_user / project_payload / accept_all: factories
    - leader, students, supervisor, admin: ready-made accounts
    - dispatcher: notification dispatcher that records what it was handed
    - draft_project / approved_project: projects in a known state
"""

import itertools
from datetime import date, timedelta

import pytest

from takharrujy import create_app
from takharrujy.models import db as _db
from takharrujy.models.university import University, User

LONG_DESCRIPTION = (
    "An indoor navigation system for the campus that uses BLE beacons "
    "and a mobile application to guide students between buildings."
)

_email_seq = itertools.count(1)


class RecordingDispatcher:
    """Collects (user_id, title, body, kind) tuples instead of sending."""

    def __init__(self):
        self.sent = []

    def notify(self, user, title, body, kind):
        self.sent.append((user.id, title, body, kind))

    def recipients(self):
        return {user_id for user_id, *_ in self.sent}


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


# ── Builders ─────────────────────────────────────────────────────────────


def _make_university(name="King Saud University", domain="ksu.edu.sa", active=True):
    uni = University(name=name, domain=domain, is_active=active)
    _db.session.add(uni)
    _db.session.commit()
    return uni


def _make_user(university, role="student", name=None, active=True):
    n = next(_email_seq)
    user = User(
        university_id=university.id,
        email=f"user{n}@{university.domain}",
        full_name=name or f"{role.title()} {n}",
        role=role,
        is_active=active,
        email_verified=True,
    )
    _db.session.add(user)
    _db.session.commit()
    return user


@pytest.fixture()
def university():
    return _make_university()


@pytest.fixture()
def other_university():
    return _make_university(name="Qassim University", domain="qu.edu.sa")


@pytest.fixture()
def leader(university):
    return _make_user(university, "student", "Leader")


@pytest.fixture()
def students(university):
    return [_make_user(university, "student", f"Member {i}") for i in range(1, 5)]


@pytest.fixture()
def supervisor(university):
    return _make_user(university, "supervisor", "Dr. Supervisor")


@pytest.fixture()
def other_supervisor(university):
    return _make_user(university, "supervisor", "Dr. Other")


@pytest.fixture()
def admin(university):
    return _make_user(university, "admin", "Admin")


@pytest.fixture()
def dispatcher():
    return RecordingDispatcher()


def _project_payload(**overrides):
    today = date.today()
    data = {
        "title": "Smart Campus Navigator",
        "description": LONG_DESCRIPTION,
        "start_date": today.isoformat(),
        "due_date": (today + timedelta(days=120)).isoformat(),
    }
    data.update(overrides)
    return data


def _accept_all(project):
    """Accept every pending invitation of ``project``."""
    from takharrujy.services.membership_ledger import respond_to_invitation

    for membership in list(project.memberships):
        if membership.status == "pending":
            respond_to_invitation(membership.user, membership.id, True)


@pytest.fixture()
def draft_project(leader, students, dispatcher):
    """Draft led by ``leader`` with students[0..1] invited and accepted."""
    from takharrujy.services.project_lifecycle import create_project

    project, _ = create_project(
        leader,
        _project_payload(member_ids=[students[0].id, students[1].id]),
        dispatcher=dispatcher,
    )
    _accept_all(project)
    return project


@pytest.fixture()
def approved_project(draft_project, leader, supervisor, dispatcher):
    """``draft_project`` submitted and approved by ``supervisor``."""
    from takharrujy.services.project_lifecycle import decide_project, submit_project

    submit_project(leader, draft_project.id, dispatcher=dispatcher)
    decide_project(supervisor, draft_project.id, True, dispatcher=dispatcher)
    dispatcher.sent.clear()
    return draft_project


# ── Factory fixtures ─────────────────────────────────────────────────────


@pytest.fixture()
def make_user():
    """``make_user(university, role="student", name=None, active=True)``"""
    return _make_user


@pytest.fixture()
def project_payload():
    """``project_payload(**overrides)``: a create payload that passes submission checks."""
    return _project_payload


@pytest.fixture()
def accept_all():
    """``accept_all(project)``: every invited student accepts."""
    return _accept_all
