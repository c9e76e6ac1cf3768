"""Shared service utilities.

parse_date_input:  date / ISO string -> date, ValidationError on bad input
require_text:      non-blank string check with field-level details
commit_or_conflict: commit the unit of work, translating lock and
                    constraint failures into ConflictError
atomic:            decorator that rolls back the session when the call raises
"""
import logging
from datetime import date, datetime
from functools import wraps

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from takharrujy.core.exceptions import ConflictError, ValidationError
from takharrujy.models import db

logger = logging.getLogger(__name__)


def parse_date_input(value, field: str):
    """Parse a date value, raising ValidationError on bad input.

    Accepts None/empty (returns None), ``date`` objects, ``datetime``
    objects (truncated) and ISO ``YYYY-MM-DD`` strings.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise ValidationError(
            f"Invalid date for {field}", details={field: "expected YYYY-MM-DD"},
        ) from exc


def validate_date_range(start: date | None, end: date | None, *, start_field="start_date",
                        end_field="due_date") -> None:
    """Raise ValidationError when both dates are set and start is after end."""
    if start and end and start > end:
        raise ValidationError(
            f"{start_field} must not be after {end_field}",
            details={end_field: f"must be on or after {start_field}"},
        )


def require_text(value, field: str, *, min_length: int = 1) -> str:
    """Return the stripped text or raise ValidationError."""
    text = str(value).strip() if value is not None else ""
    if len(text) < min_length:
        if min_length <= 1:
            detail = "required"
        else:
            detail = f"must be at least {min_length} characters"
        raise ValidationError(f"{field} is invalid", details={field: detail})
    return text


# ── Database commit helper ───────────────────────────────────────────────────

def commit_or_conflict(resource: str):
    """Commit the current session or raise ConflictError after rollback.

    IntegrityError -> unique / partial-index violation (e.g. a second
    active membership committed concurrently).
    StaleDataError -> optimistic-lock version mismatch.
    Anything else is rolled back and re-raised.
    """
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit (%s): %s", resource, exc.orig)
        raise ConflictError(
            resource, "constraint", message=f"{resource} conflicts with existing data",
        ) from exc
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("Concurrent modification on commit (%s): %s", resource, exc)
        raise ConflictError(
            resource, "version", message=f"{resource} was modified concurrently",
        ) from exc
    except Exception:
        db.session.rollback()
        logger.exception("Unexpected database error on commit (%s)", resource)
        raise


def atomic(fn):
    """Roll the session back when a service operation raises.

    Validation and policy errors can surface after earlier statements have
    touched the session; nothing from a failed call may reach a later commit.
    """
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except Exception:
            db.session.rollback()
            raise
    return wrapper
