from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class RunRecord(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    pipeline: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    commit: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    event_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), default=now_utc, nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)


class JobRecord(Base):
    __tablename__ = "jobs"
    __table_args__ = (sa.UniqueConstraint("run_id", "job_name"),)
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.String(64), sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    job_name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    summary_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)
    logs: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
