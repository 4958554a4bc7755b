"""Core SQLAlchemy models (2.x style) for the voter-roll schema.

Models with indexes and constraints for PostgreSQL; the partial unique
indexes are also honoured by SQLite, which the test-suite runs on.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum

from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class GeocodingJobStatus(str, Enum):
    """Geocoding job lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_JOB_STATUSES = frozenset(
    {GeocodingJobStatus.PENDING, GeocodingJobStatus.RUNNING, GeocodingJobStatus.PAUSED}
)


class SupportStatus(str, Enum):
    """Voting support classification (used downstream only)."""
    WHITE = "white"
    BLACK = "black"
    RED = "red"


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class RosterVersion(Base):
    """A named, dated snapshot of the electoral roll."""
    __tablename__ = "roster_versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text)
    election_date: Mapped[date | None] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_by: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    voters: Mapped[list[VoterRecord]] = relationship(
        "VoterRecord",
        back_populates="version",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        # At most one active version
        Index(
            "uq_roster_versions_single_active",
            "is_active",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )


class HouseholdMember(Base):
    """Household member owned by the household subsystem (read-only here)."""
    __tablename__ = "household_members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    household_id: Mapped[int | None] = mapped_column(Integer, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    ic_number: Mapped[str | None] = mapped_column(String(20))


class VoterRecord(Base):
    """One electoral-roll entry of a roster version."""
    __tablename__ = "voters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    version_id: Mapped[int] = mapped_column(
        ForeignKey("roster_versions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    serial_no: Mapped[int | None] = mapped_column(Integer)
    ic_number: Mapped[str | None] = mapped_column(String(20), index=True)
    legacy_ic_number: Mapped[str | None] = mapped_column(String(20))
    name: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    phone: Mapped[str | None] = mapped_column(String(20))
    sex: Mapped[str | None] = mapped_column(String(1))
    date_of_birth: Mapped[date | None] = mapped_column(Date)
    ethnicity: Mapped[str | None] = mapped_column(Text)
    religion: Mapped[str | None] = mapped_column(Text)
    ethnic_category: Mapped[str | None] = mapped_column(Text)
    house_no: Mapped[str | None] = mapped_column(Text)
    address: Mapped[str | None] = mapped_column(Text)
    postcode: Mapped[str | None] = mapped_column(String(10))
    district: Mapped[str | None] = mapped_column(Text)
    locality_code: Mapped[str | None] = mapped_column(String(50), index=True)
    parliament_name: Mapped[str | None] = mapped_column(Text)
    dun_name: Mapped[str | None] = mapped_column(Text)
    polling_district_name: Mapped[str | None] = mapped_column(Text)
    locality_name: Mapped[str | None] = mapped_column(Text)
    voting_category: Mapped[str | None] = mapped_column(Text)
    polling_station_name: Mapped[str | None] = mapped_column(Text)
    voting_time: Mapped[str | None] = mapped_column(Text)
    channel: Mapped[int | None] = mapped_column(Integer)
    household_member_id: Mapped[int | None] = mapped_column(
        ForeignKey("household_members.id", ondelete="SET NULL"),
        index=True,
    )
    support_status: Mapped[SupportStatus | None] = mapped_column(
        SAEnum(SupportStatus, name="voting_support_status", values_callable=_enum_values),
    )
    lat: Mapped[float | None] = mapped_column(Float)
    lng: Mapped[float | None] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    version: Mapped[RosterVersion] = relationship("RosterVersion", back_populates="voters")

    __table_args__ = (
        Index("ix_voters_version_lat", "version_id", "lat"),
        Index("ix_voters_version_household", "version_id", "household_member_id"),
    )


class GeocodingJob(Base):
    """Durable state of one geocoding run over a roster version."""
    __tablename__ = "geocoding_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    version_id: Mapped[int] = mapped_column(
        ForeignKey("roster_versions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status: Mapped[GeocodingJobStatus] = mapped_column(
        SAEnum(GeocodingJobStatus, name="geocoding_job_status", values_callable=_enum_values),
        default=GeocodingJobStatus.PENDING,
        nullable=False,
        index=True,
    )
    total_voters: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_voters: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    geocoded_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Highest voter id covered by the last checkpoint; resume starts after it
    last_voter_id: Mapped[int | None] = mapped_column(Integer)
    error_message: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[int | None] = mapped_column(Integer)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_geocoding_jobs_created_at", "created_at"),
        # At most one non-terminal job per version
        Index(
            "uq_geocoding_jobs_active_version",
            "version_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'running', 'paused')"),
            sqlite_where=text("status IN ('pending', 'running', 'paused')"),
        ),
    )
