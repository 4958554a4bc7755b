"""Import an electoral-roll CSV file into a roster version.

Usage:
    python import_roll.py --version 3 data/roll.csv
    python import_roll.py --version 3 --chunk-size 500 data/roll.csv
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from roster.db import AsyncSessionMaker, engine
from roster.logging_config import setup_logging
from roster.parsers import ParseError
from roster.pipelines.ingest import import_voters_in_chunks
from roster.pipelines.versions import RosterVersionNotFoundError


def print_progress(processed: int, total: int):
    """Single-line progress indicator."""
    percent = processed * 100 // total if total else 100
    print(f"\r  {processed}/{total} rows ({percent}%)", end="", flush=True)


async def run_import(csv_path: Path, version_id: int, chunk_size: int | None):
    content = csv_path.read_text(encoding="utf-8-sig", errors="replace")
    print(f"Importing {csv_path} into version {version_id}...")

    try:
        result = await import_voters_in_chunks(
            AsyncSessionMaker,
            version_id,
            content,
            chunk_size=chunk_size,
            on_progress=print_progress,
        )
    finally:
        await engine.dispose()

    print()
    print(f"✓ Imported {result.imported} voters")
    if result.failed:
        print(f"⚠️  {result.failed} rows rejected; first {len(result.errors)} errors:")
        for error in result.errors:
            print(f"  {error}")


def main():
    parser = argparse.ArgumentParser(description="Import an electoral-roll CSV export")
    parser.add_argument("csv", type=Path, help="CSV file with a header row")
    parser.add_argument("--version", type=int, required=True, dest="version_id", help="Target roster version id")
    parser.add_argument("--chunk-size", type=int, default=None, help="Lines per chunk (default from config)")
    args = parser.parse_args()

    if not args.csv.exists():
        print(f"❌ File not found: {args.csv}")
        sys.exit(1)

    setup_logging()

    try:
        asyncio.run(run_import(args.csv, args.version_id, args.chunk_size))
    except (ParseError, RosterVersionNotFoundError) as e:
        print(f"\n❌ Import rejected: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
