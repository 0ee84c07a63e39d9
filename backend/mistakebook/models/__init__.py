"""SQLAlchemy ORM models. Importing this package registers them on Base.metadata."""

from mistakebook.models.question import MistakeQuestion

__all__ = ["MistakeQuestion"]
