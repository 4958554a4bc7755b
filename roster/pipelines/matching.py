"""Household matching pipeline: unlinked voters → household members.

Voters are matched by normalized identity-card number (current, then legacy)
and, failing that, by an exact name that belongs to exactly one member.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from roster import models
from roster.config import settings
from roster.pipelines.versions import ensure_version_exists

logger = logging.getLogger(__name__)

_IC_SEPARATORS = re.compile(r"[\s-]")
_IC_GROUPS = re.compile(r"(\d{6})(\d{2})(\d{4})")


@dataclass
class MatchStats:
    """Outcome of one matching run."""
    matched: int
    unmatched: int
    total: int


@dataclass
class MemberIndex:
    """Lookup tables over all household members."""
    by_ic: dict[str, int] = field(default_factory=dict)
    by_name: dict[str, list[int]] = field(default_factory=dict)


class MatchingError(Exception):
    """Raised when the matching pipeline fails."""
    pass


def normalize_ic(value: str | None) -> str | None:
    """Strip whitespace and hyphens and uppercase; None for blank input."""
    if not value:
        return None
    normalized = _IC_SEPARATORS.sub("", value).upper()
    return normalized or None


def normalize_name(value: str | None) -> str | None:
    if not value:
        return None
    return value.strip().upper() or None


def build_member_index(members: list[tuple[int, str | None, str | None]]) -> MemberIndex:
    """Index (id, name, ic_number) tuples by identifier and by name.

    Each identifier is indexed as normalized and in its hyphenated 6-2-4
    grouping. A later member overwrites an earlier one on the same
    identifier.
    """
    index = MemberIndex()
    for member_id, name, ic_number in members:
        ic = normalize_ic(ic_number)
        if ic:
            index.by_ic[ic] = member_id
            hyphenated = _IC_GROUPS.sub(r"\1-\2-\3", ic, count=1)
            if hyphenated != ic:
                index.by_ic[hyphenated] = member_id

        key = normalize_name(name)
        if key:
            index.by_name.setdefault(key, []).append(member_id)
    return index


def find_member(
    index: MemberIndex,
    ic_number: str | None,
    legacy_ic_number: str | None,
    name: str | None,
) -> int | None:
    """Return the matching member id, first hit wins."""
    for candidate in (ic_number, legacy_ic_number):
        ic = normalize_ic(candidate)
        if ic and ic in index.by_ic:
            return index.by_ic[ic]

    key = normalize_name(name)
    if key:
        member_ids = index.by_name.get(key)
        # Ambiguous names are never linked
        if member_ids and len(member_ids) == 1:
            return member_ids[0]
    return None


async def _link_voter(
    session_factory: async_sessionmaker[AsyncSession],
    voter_id: int,
    member_id: int,
) -> None:
    async with session_factory() as session:
        await session.execute(
            update(models.VoterRecord)
            .where(models.VoterRecord.id == voter_id)
            .values(household_member_id=member_id, updated_at=models.utcnow())
        )
        await session.commit()


async def match_voters_with_households(
    session_factory: async_sessionmaker[AsyncSession],
    version_id: int,
    *,
    batch_size: int | None = None,
) -> MatchStats:
    """Link the unlinked voters of a version to household members.

    Args:
        session_factory: Factory for the load session and the update sessions
        version_id: Roster version to match
        batch_size: Concurrent updates per batch (default from config)

    Returns:
        MatchStats with matched, unmatched and total counts

    Raises:
        RosterVersionNotFoundError: If the version does not exist
        MatchingError: If loading or updating fails
    """
    batch_size = batch_size or settings.matching.update_batch_size

    async with session_factory() as session:
        await ensure_version_exists(session, version_id)
        try:
            voters_result = await session.execute(
                select(
                    models.VoterRecord.id,
                    models.VoterRecord.ic_number,
                    models.VoterRecord.legacy_ic_number,
                    models.VoterRecord.name,
                ).where(
                    models.VoterRecord.version_id == version_id,
                    models.VoterRecord.household_member_id.is_(None),
                )
            )
            voters = voters_result.all()

            members_result = await session.execute(
                select(
                    models.HouseholdMember.id,
                    models.HouseholdMember.name,
                    models.HouseholdMember.ic_number,
                )
            )
            members = [tuple(row) for row in members_result.all()]
        except SQLAlchemyError as e:
            logger.error(f"Loading match inputs for version {version_id} failed: {e}")
            raise MatchingError(f"Failed to load voters or household members: {e}") from e

    logger.info(f"Matching {len(voters)} unlinked voters against {len(members)} household members")

    index = build_member_index(members)
    links: list[tuple[int, int]] = []
    for voter_id, ic_number, legacy_ic_number, name in voters:
        member_id = find_member(index, ic_number, legacy_ic_number, name)
        if member_id is not None:
            links.append((voter_id, member_id))

    try:
        for start in range(0, len(links), batch_size):
            batch = links[start:start + batch_size]
            await asyncio.gather(
                *(_link_voter(session_factory, voter_id, member_id) for voter_id, member_id in batch)
            )
    except SQLAlchemyError as e:
        logger.error(f"Linking voters of version {version_id} failed: {e}")
        raise MatchingError(f"Failed to update household links: {e}") from e

    stats = MatchStats(matched=len(links), unmatched=len(voters) - len(links), total=len(voters))
    logger.info(
        f"Matching for version {version_id} done: "
        f"{stats.matched} matched, {stats.unmatched} unmatched"
    )
    return stats
