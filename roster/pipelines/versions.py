"""Roster version management.

A version is a dated snapshot of the roll. At most one version is active;
activating one clears the flag on every other version in the same
transaction.
"""
from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from roster import models

logger = logging.getLogger(__name__)


class RosterVersionError(Exception):
    """Raised when a version operation is invalid."""
    pass


class RosterVersionNotFoundError(RosterVersionError):
    """Raised when the target version does not exist."""

    def __init__(self, version_id: int):
        super().__init__(f"Invalid version ID: {version_id}")
        self.version_id = version_id


async def get_version(session: AsyncSession, version_id: int) -> models.RosterVersion:
    """Load a version or raise RosterVersionNotFoundError."""
    version = await session.get(models.RosterVersion, version_id)
    if version is None:
        raise RosterVersionNotFoundError(version_id)
    return version


async def ensure_version_exists(session: AsyncSession, version_id: int) -> None:
    result = await session.execute(
        select(models.RosterVersion.id).where(models.RosterVersion.id == version_id)
    )
    if result.scalar_one_or_none() is None:
        raise RosterVersionNotFoundError(version_id)


async def list_versions(session: AsyncSession) -> list[models.RosterVersion]:
    """All versions, newest first."""
    result = await session.execute(
        select(models.RosterVersion).order_by(
            models.RosterVersion.created_at.desc(),
            models.RosterVersion.id.desc(),
        )
    )
    return list(result.scalars().all())


async def _deactivate_others(session: AsyncSession, keep_id: int | None = None) -> None:
    stmt = update(models.RosterVersion).where(models.RosterVersion.is_active.is_(True))
    if keep_id is not None:
        stmt = stmt.where(models.RosterVersion.id != keep_id)
    await session.execute(stmt.values(is_active=False))


async def create_version(
    session: AsyncSession,
    *,
    name: str,
    description: str | None = None,
    election_date: date | None = None,
    is_active: bool = False,
    created_by: int | None = None,
) -> models.RosterVersion:
    """Create a roster version, deactivating the others when it is active."""
    if not name or not name.strip():
        raise RosterVersionError("Version name is required")

    if is_active:
        await _deactivate_others(session)

    version = models.RosterVersion(
        name=name.strip(),
        description=(description or "").strip() or None,
        election_date=election_date,
        is_active=is_active,
        created_by=created_by,
    )
    session.add(version)
    await session.commit()

    logger.info(f"Created roster version {version.id} ({version.name}, active={version.is_active})")
    return version


async def update_version(
    session: AsyncSession,
    version_id: int,
    *,
    name: str | None = None,
    description: str | None = None,
    election_date: date | None = None,
    is_active: bool | None = None,
) -> models.RosterVersion:
    """Update a version; fields left as None are unchanged."""
    version = await get_version(session, version_id)

    if name is not None:
        if not name.strip():
            raise RosterVersionError("Version name cannot be empty")
        version.name = name.strip()
    if description is not None:
        version.description = description.strip() or None
    if election_date is not None:
        version.election_date = election_date

    if is_active is not None:
        if is_active:
            await _deactivate_others(session, keep_id=version_id)
        version.is_active = is_active

    await session.commit()
    await session.refresh(version)
    return version


async def clear_version_voters(session: AsyncSession, version_id: int) -> int:
    """Delete every voter of a version, keeping the version itself.

    Returns:
        Number of deleted voters
    """
    await ensure_version_exists(session, version_id)

    count_result = await session.execute(
        select(func.count()).select_from(models.VoterRecord).where(
            models.VoterRecord.version_id == version_id
        )
    )
    count = count_result.scalar_one()

    await session.execute(
        delete(models.VoterRecord).where(models.VoterRecord.version_id == version_id)
    )
    await session.commit()

    logger.info(f"Cleared {count} voters from version {version_id}")
    return count
