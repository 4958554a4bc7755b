"""CSV export of a roster version in the import column layout."""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from roster import models
from roster.parsers import VOTER_COLUMNS, format_export_value

logger = logging.getLogger(__name__)


class VoterExportError(Exception):
    """Raised when there is nothing to export."""
    pass


def render_voter_row(voter: models.VoterRecord) -> str:
    return ",".join(
        format_export_value(column, getattr(voter, column.attribute))
        for column in VOTER_COLUMNS
    )


async def export_voters_csv(session: AsyncSession, version_id: int | None = None) -> str:
    """Render voters as CSV, ordered by name.

    Args:
        session: Database session
        version_id: Restrict to one version (all voters when None)

    Returns:
        CSV text with the header row first

    Raises:
        VoterExportError: If no voter matches
    """
    query = select(models.VoterRecord).order_by(models.VoterRecord.name, models.VoterRecord.id)
    if version_id is not None:
        query = query.where(models.VoterRecord.version_id == version_id)

    result = await session.execute(query)
    voters = result.scalars().all()

    if not voters:
        raise VoterExportError("No voters found to export")

    lines = [",".join(column.header for column in VOTER_COLUMNS)]
    lines.extend(render_voter_row(voter) for voter in voters)

    logger.info(f"Exported {len(voters)} voters (version={version_id})")
    return "\n".join(lines)
