# app/db/models/db_base_model.py
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import DateTime
from datetime import datetime, timezone
from secrets import token_urlsafe


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class DbBaseModel(DeclarativeBase):
    __abstract__ = True  # prevents SQLAlchemy from creating a table for this base

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,  # always UTC
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,  # auto-update on row change
        nullable=False,
    )

    @staticmethod
    def generate_session_id() -> str:
        return token_urlsafe(32)


__all__ = ["DbBaseModel", "utcnow"]
