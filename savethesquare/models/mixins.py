# savethesquare/models/mixins.py
"""Shared SQLAlchemy mixin for created/updated timestamps."""

from datetime import datetime, timezone

from sqlalchemy import event

from savethesquare.extensions import db


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TimestampMixin:
    """Adds created_at and updated_at columns with auto-refresh behavior."""

    created_at = db.Column(db.DateTime, default=_utcnow, nullable=False, index=True)
    updated_at = db.Column(
        db.DateTime,
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )

    @staticmethod
    def _set_updated_at(mapper, connection, target):
        target.updated_at = _utcnow()

    @classmethod
    def __declare_last__(cls):
        event.listen(cls, "before_update", cls._set_updated_at)
