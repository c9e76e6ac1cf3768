"""
University-scoped query helpers.

Every get-by-id in the services goes through these helpers instead of
``db.session.get(Model, pk)``. A direct ``get`` would return another
university's row; here a record outside the caller's scope is reported
exactly like a missing one.

Usage:
    # Scope by university_id (every UniversityModel subclass)
    project = get_scoped(Project, project_id, university_id=actor.university_id)

    # Scope by project_id (tasks, deliverables, memberships)
    dep = get_scoped(Task, dep_id, project_id=task.project_id)

    # Row lock for the unit of work (no-op on SQLite)
    task = get_scoped(Task, task_id, university_id=uid, for_update=True)

    # When None is an acceptable outcome
    user = get_scoped_or_none(User, user_id, university_id=uid)

Each scope keyword maps to a column of the same name. A keyword the model
lacks is a programming error and raises ValueError at call time.
"""

import logging

from sqlalchemy import select

from takharrujy.core.exceptions import NotFoundError
from takharrujy.models import db

logger = logging.getLogger(__name__)


def get_scoped(
    model,
    pk: int,
    *,
    university_id: int | None = None,
    project_id: int | None = None,
    for_update: bool = False,
):
    """Fetch a single entity by PK with mandatory scope filter.

    At least one scope parameter MUST be provided and MUST correspond to a
    column on the model. Cross-university access is indistinguishable from
    a missing record: both raise NotFoundError.

    Args:
        model: SQLAlchemy model class with an ``id`` PK.
        pk: Primary key value to look up.
        university_id: Scope by university_id column.
        project_id: Scope by project_id column.
        for_update: Lock the row (``SELECT ... FOR UPDATE``) for the
                    remainder of the transaction.

    Raises:
        ValueError: No scope given, or a scope column the model lacks.
        NotFoundError: Entity missing OR outside the given scope.
    """
    provided_scopes = {
        "university_id": university_id,
        "project_id": project_id,
    }
    provided_scopes = {k: v for k, v in provided_scopes.items() if v is not None}

    if not provided_scopes:
        raise ValueError(
            f"{model.__name__} id={pk} requires at least one scope filter "
            "(university_id or project_id). Unscoped lookups are forbidden."
        )

    missing_fields = [field for field in provided_scopes if not hasattr(model, field)]
    if missing_fields:
        raise ValueError(
            f"{model.__name__} has no scope column(s) {sorted(missing_fields)}; "
            "refusing to perform a partially scoped lookup."
        )

    if pk is None:
        raise NotFoundError(resource=model.__name__)

    stmt = select(model).where(model.id == pk)
    for field, value in provided_scopes.items():
        stmt = stmt.where(getattr(model, field) == value)
    if for_update:
        stmt = stmt.with_for_update()

    result = db.session.execute(stmt).scalar_one_or_none()

    if result is None:
        logger.debug(
            "get_scoped: %s id=%s not found in scope %s",
            model.__name__,
            pk,
            provided_scopes,
        )
        raise NotFoundError(resource=model.__name__, resource_id=pk)

    return result


def get_scoped_or_none(
    model,
    pk: int,
    *,
    university_id: int | None = None,
    project_id: int | None = None,
):
    """Same as get_scoped but returns None instead of raising NotFoundError.

    Still raises ValueError for a missing or invalid scope.
    """
    try:
        return get_scoped(model, pk, university_id=university_id, project_id=project_id)
    except NotFoundError:
        return None
