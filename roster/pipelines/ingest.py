"""Voter-roll CSV import pipeline.

Rows are parsed, validated and collected into bounded batches. Each batch is
written with one bulk insert; when that fails the batch is replayed row by
row so one bad row costs only itself. Row problems are reported as messages
keyed by their 1-based source line number and never abort the import.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol, Sequence

from sqlalchemy import insert
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from roster import models
from roster.config import settings
from roster.parsers import (
    ParseError,
    build_header_map,
    parse_csv_line,
    row_to_voter_values,
    split_lines,
    validate_header,
)
from roster.pipelines.versions import ensure_version_exists

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class VoterImportError(ParseError):
    """Raised when an import is rejected before any row is written."""
    pass


class EmptyImportError(VoterImportError):
    """Raised when the CSV has no header or no data row."""
    pass


@dataclass
class PendingRow:
    """A validated row waiting to be flushed."""
    line_number: int
    values: dict[str, Any]


@dataclass
class ImportResult:
    """Outcome of an import call."""
    imported: int = 0
    errors: list[str] = field(default_factory=list)
    failed: int = 0

    def capped(self, limit: int | None = None) -> ImportResult:
        limit = limit or settings.ingest.max_reported_errors
        return ImportResult(imported=self.imported, errors=self.errors[:limit], failed=self.failed)


def _db_message(exc: SQLAlchemyError) -> str:
    orig = getattr(exc, "orig", None)
    text = str(orig if orig is not None else exc).strip()
    return text.splitlines()[0] if text else type(exc).__name__


class RowWriter(Protocol):
    """Persistence seam used by the batch inserter."""

    async def insert_many(self, rows: Sequence[Mapping[str, Any]]) -> None: ...

    async def insert_one(self, row: Mapping[str, Any]) -> None: ...


class SessionRowWriter:
    """Writes voter rows through an AsyncSession, one transaction per call."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def insert_many(self, rows: Sequence[Mapping[str, Any]]) -> None:
        await self._write(list(rows))

    async def insert_one(self, row: Mapping[str, Any]) -> None:
        await self._write([row])

    async def _write(self, rows: list[Mapping[str, Any]]) -> None:
        try:
            await self.session.execute(insert(models.VoterRecord), rows)
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            raise


class FallbackBatchInserter:
    """Bulk insert first, row-by-row only when the bulk insert fails."""

    def __init__(self, writer: RowWriter):
        self.writer = writer

    async def flush(self, rows: Sequence[PendingRow]) -> ImportResult:
        result = ImportResult()
        if not rows:
            return result

        try:
            await self.writer.insert_many([row.values for row in rows])
            result.imported = len(rows)
            return result
        except OperationalError:
            # Connection-level failure: left to the caller's retry
            raise
        except SQLAlchemyError as e:
            logger.warning(
                f"Bulk insert of {len(rows)} rows (lines {rows[0].line_number}-{rows[-1].line_number}) "
                f"failed, retrying row by row: {_db_message(e)}"
            )

        for row in rows:
            try:
                await self.writer.insert_one(row.values)
                result.imported += 1
            except SQLAlchemyError as e:
                result.failed += 1
                result.errors.append(f"Row {row.line_number}: {_db_message(e)}")

        return result


async def _import_lines(
    inserter: FallbackBatchInserter,
    version_id: int,
    header_map: Mapping[str, int],
    lines: Sequence[str],
    row_offset: int,
    batch_size: int,
) -> ImportResult:
    """Shared per-row loop of the whole-file and chunked imports.

    ``row_offset`` is the number of file lines preceding ``lines``, so the
    line at index i is reported as row ``row_offset + i + 1``.
    """
    result = ImportResult()
    batch: list[PendingRow] = []

    async def flush() -> None:
        outcome = await inserter.flush(batch)
        result.imported += outcome.imported
        result.failed += outcome.failed
        result.errors.extend(outcome.errors)
        batch.clear()

    for i, line in enumerate(lines):
        if not line.strip():
            continue
        row_number = row_offset + i + 1

        try:
            values = row_to_voter_values(parse_csv_line(line), header_map)
        except (ValueError, TypeError) as e:
            result.failed += 1
            result.errors.append(f"Row {row_number}: {e}")
            continue

        if not values["name"]:
            result.failed += 1
            result.errors.append(f"Row {row_number}: Name is required")
            continue

        values["version_id"] = version_id
        batch.append(PendingRow(line_number=row_number, values=values))

        if len(batch) >= batch_size:
            await flush()

    await flush()
    return result


async def import_voters_from_csv(
    session: AsyncSession,
    version_id: int,
    csv_content: str,
    *,
    batch_size: int | None = None,
) -> ImportResult:
    """Import a whole CSV document into a roster version.

    Args:
        session: Database session
        version_id: Target roster version
        csv_content: Full CSV text, header on the first line
        batch_size: Rows per bulk insert (default from config)

    Returns:
        ImportResult with the imported count and the first errors

    Raises:
        RosterVersionNotFoundError: If the version does not exist
        VoterImportError: If the file is empty or a required column is missing
    """
    batch_size = batch_size or settings.ingest.batch_size

    await ensure_version_exists(session, version_id)

    lines = split_lines(csv_content)
    if len(lines) < 2 or not any(line.strip() for line in lines[1:]):
        raise EmptyImportError("CSV file must have at least a header and one data row")

    header_map = build_header_map(lines[0])
    validate_header(header_map)

    logger.info(f"Importing {len(lines) - 1} lines into version {version_id}")

    result = await _import_lines(
        FallbackBatchInserter(SessionRowWriter(session)),
        version_id,
        header_map,
        lines[1:],
        row_offset=1,
        batch_size=batch_size,
    )

    logger.info(
        f"Import into version {version_id} finished: "
        f"{result.imported} imported, {result.failed} rejected"
    )
    return result.capped()


async def import_voters_chunk(
    session: AsyncSession,
    version_id: int,
    header_map: Mapping[str, int],
    lines: Sequence[str],
    row_offset: int,
    *,
    skip_version_check: bool = False,
    batch_size: int | None = None,
) -> ImportResult:
    """Import a slice of a CSV document with a pre-built header map.

    Lets a caller drive one file through several smaller calls while keeping
    the whole-file row semantics and numbering.

    Args:
        session: Database session
        version_id: Target roster version
        header_map: Column name to index map of the file's header
        lines: Raw data lines of this chunk
        row_offset: File lines before the chunk, header included
        skip_version_check: Skip the version lookup (later chunks)
        batch_size: Rows per bulk insert (default from config)
    """
    batch_size = batch_size or settings.ingest.batch_size

    if not skip_version_check:
        await ensure_version_exists(session, version_id)
    validate_header(header_map)

    result = await _import_lines(
        FallbackBatchInserter(SessionRowWriter(session)),
        version_id,
        header_map,
        lines,
        row_offset=row_offset,
        batch_size=batch_size,
    )
    return result.capped()


async def import_voters_in_chunks(
    session_factory: async_sessionmaker[AsyncSession],
    version_id: int,
    csv_content: str,
    *,
    chunk_size: int | None = None,
    on_progress: ProgressCallback | None = None,
) -> ImportResult:
    """Import a CSV document chunk by chunk, reporting progress.

    Each chunk runs in its own session and is retried on transient database
    errors. A chunk that still fails is reported as one error and the import
    moves on.
    """
    chunk_size = chunk_size or settings.ingest.chunk_size

    lines = split_lines(csv_content)
    if len(lines) < 2 or not any(line.strip() for line in lines[1:]):
        raise EmptyImportError("CSV file must have at least a header and one data row")

    header_map = build_header_map(lines[0])
    validate_header(header_map)

    data_lines = lines[1:]
    total = len(data_lines)
    merged = ImportResult()

    for start in range(0, total, chunk_size):
        chunk = data_lines[start:start + chunk_size]
        chunk_number = start // chunk_size + 1

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(settings.ingest.chunk_retry_attempts),
                wait=wait_exponential(multiplier=1, min=1, max=10),
                retry=retry_if_exception_type(OperationalError),
                reraise=True,
            ):
                with attempt:
                    async with session_factory() as session:
                        # One bulk insert per chunk so a retried chunk starts from nothing written
                        outcome = await import_voters_chunk(
                            session,
                            version_id,
                            header_map,
                            chunk,
                            row_offset=start + 1,
                            skip_version_check=chunk_number > 1,
                            batch_size=len(chunk),
                        )
        except OperationalError as e:
            logger.error(f"Chunk {chunk_number} failed after retries: {e}")
            merged.errors.append(
                f"Chunk {chunk_number} (rows {start + 2}-{start + len(chunk) + 1}): {_db_message(e)}"
            )
            merged.failed += sum(1 for line in chunk if line.strip())
        else:
            merged.imported += outcome.imported
            merged.failed += outcome.failed
            merged.errors.extend(outcome.errors)

        if on_progress is not None:
            on_progress(min(start + chunk_size, total), total)

    return merged.capped()
