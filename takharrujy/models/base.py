"""
UniversityModel: abstract base class for university-scoped models.

Every model except ``University`` itself inherits from this instead of
db.Model directly. This adds:
  - university_id FK column with index
  - query_for_university(university_id) classmethod

``one_of`` builds CHECK constraint text from a vocabulary constant.
"""

from takharrujy.models import db


class UniversityModel(db.Model):
    """Abstract base for university-scoped tables."""
    __abstract__ = True

    university_id = db.Column(
        db.Integer,
        db.ForeignKey("universities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def query_for_university(cls, university_id):
        """Return a query filtered by university_id."""
        return cls.query.filter_by(university_id=university_id)



def one_of(column: str, values) -> str:
    """SQL text for a CHECK that ``column`` holds one of ``values``."""
    quoted = ", ".join(f"'{v}'" for v in sorted(values))
    return f"{column} IN ({quoted})"
