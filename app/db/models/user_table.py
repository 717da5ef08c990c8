# app/db/models/user_table.py
from __future__ import annotations
from enum import Enum
from typing import Optional
from datetime import datetime
from sqlalchemy import DateTime, ForeignKey, Integer, String, Enum as sqlalchemy_Enum
from sqlalchemy.orm import Mapped, mapped_column, relationship
from .db_base_model import DbBaseModel


class UserRole(str, Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    PARTNER = "partner"
    ADMIN = "admin"


class User(DbBaseModel):
    """
    Account row. Only the columns this service reads are mapped; profile,
    address and billing columns belong to the CRUD side of the platform.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    username: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, unique=True)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)

    role: Mapped[UserRole] = mapped_column(
        sqlalchemy_Enum(
            UserRole,
            name="user_role",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=UserRole.PATIENT,
    )

    # NULL means the free plan
    subscription_plan: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    emergency_consultations_left: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True
    )

    sessions: Mapped[list["UserSession"]] = relationship(
        "UserSession", back_populates="user", cascade="all, delete-orphan"
    )


class UserSession(DbBaseModel):
    """Server-side session, addressed by the X-Session-ID header."""

    __tablename__ = "user_sessions"

    session_id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=DbBaseModel.generate_session_id,
    )

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="sessions")


__all__ = ["User", "UserRole", "UserSession"]
