"""CSV parsing for electoral-roll exports.

Spreadsheet tools export the roll with a simple quoting convention: a field
wrapped in double quotes may contain commas, and quote characters only
toggle the quoted mode. This module parses that dialect line by line and
converts the raw cells to voter-record values.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Mapping, Sequence

import pandas as pd

from roster.config import settings

logger = logging.getLogger(__name__)

NAME_COLUMN = "Nama"
REQUIRED_COLUMNS: tuple[str, ...] = (NAME_COLUMN,)

# Spreadsheet serial dates: day 2 is 1900-01-01, 25569 is 1970-01-01.
# Only values above the threshold are read as serials.
SERIAL_DATE_EPOCH = date(1900, 1, 1)
SERIAL_DATE_OFFSET = 2
SERIAL_DATE_THRESHOLD = 25569

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


class ParseError(Exception):
    """Raised when a CSV document is structurally unusable."""
    pass


class MissingColumnError(ParseError):
    """Raised when the header lacks a required column."""

    def __init__(self, column: str):
        super().__init__(f"Missing required column: {column}")
        self.column = column


def parse_csv_line(line: str) -> list[str]:
    """Split one CSV line into trimmed field values.

    Quotes toggle the quoted mode and are dropped; a comma only separates
    fields outside quotes.

    Example:
        >>> parse_csv_line('"Doe, John",123')
        ['Doe, John', '123']
    """
    values: list[str] = []
    current: list[str] = []
    in_quotes = False

    for char in line:
        if char == '"':
            in_quotes = not in_quotes
        elif char == "," and not in_quotes:
            values.append("".join(current).strip())
            current = []
        else:
            current.append(char)

    values.append("".join(current).strip())
    return values


def split_lines(content: str) -> list[str]:
    """Split CSV text into lines, dropping a trailing empty line."""
    lines = content.split("\n")
    lines = [line[:-1] if line.endswith("\r") else line for line in lines]
    if lines and not lines[-1].strip():
        lines.pop()
    return lines


def build_header_map(header_line: str) -> dict[str, int]:
    """Map each header name to its column index.

    Duplicate names resolve to the last occurrence.
    """
    header_line = header_line.lstrip("\ufeff")
    return {name: idx for idx, name in enumerate(parse_csv_line(header_line))}


def validate_header(header_map: Mapping[str, int], required: Sequence[str] = REQUIRED_COLUMNS) -> None:
    """Raise MissingColumnError for the first required column not present."""
    for column in required:
        if column not in header_map:
            raise MissingColumnError(column)


def parse_int_or_none(value: str | None) -> int | None:
    """Parse the leading integer of a cell, as spreadsheet exports write it.

    Returns None when the cell is empty or does not start with digits.
    """
    if not value:
        return None
    match = _LEADING_INT.match(value)
    if not match:
        return None
    return int(match.group(1))


def serial_to_date(serial: int) -> date:
    """Convert a spreadsheet serial day number to a calendar date."""
    return SERIAL_DATE_EPOCH + timedelta(days=serial - SERIAL_DATE_OFFSET)


def serial_to_stored_date(serial: int, utc_offset_hours: float | None = None) -> date:
    """Date stored for a serial cell: the UTC date of its local midnight.

    Rolls are recorded at UTC+8 by default, so 25570 (1970-01-02 local)
    is stored as 1970-01-01.
    """
    if utc_offset_hours is None:
        utc_offset_hours = settings.ingest.serial_date_utc_offset_hours
    local_tz = timezone(timedelta(hours=utc_offset_hours))
    local_midnight = datetime.combine(serial_to_date(serial), time(), tzinfo=local_tz)
    return local_midnight.astimezone(timezone.utc).date()


def parse_date_of_birth(value: str | None) -> date | None:
    """Parse a date of birth cell.

    Accepts a spreadsheet serial date (integer above 25569, see
    serial_to_stored_date) or a free-text date; ISO and day-first
    (DD/MM/YYYY) strings are understood. Anything unparseable yields None.
    """
    if not value or not value.strip():
        return None

    serial = parse_int_or_none(value)
    if serial is not None and serial > SERIAL_DATE_THRESHOLD:
        try:
            return serial_to_stored_date(serial)
        except OverflowError:
            return None

    text = value.strip()
    if text.isdigit():
        # Bare numbers at or below the threshold are not dates
        return None

    parsed = pd.to_datetime(text, errors="coerce", format="ISO8601")
    if pd.isna(parsed):
        parsed = pd.to_datetime(text, errors="coerce", dayfirst=True)
    if pd.isna(parsed):
        return None
    return parsed.date()


@dataclass(frozen=True)
class Column:
    """One CSV column and the voter attribute it feeds."""
    header: str
    attribute: str
    convert: Callable[[str | None], object] | None = None
    quoted: bool = False


# Import and export share this order
VOTER_COLUMNS: tuple[Column, ...] = (
    Column("NoSiri", "serial_no", parse_int_or_none),
    Column("NoKp", "ic_number"),
    Column("NoKpLama", "legacy_ic_number"),
    Column("Nama", "name", quoted=True),
    Column("NoHP", "phone"),
    Column("Jantina", "sex"),
    Column("TarikhLahir", "date_of_birth", parse_date_of_birth),
    Column("Bangsa", "ethnicity"),
    Column("agama", "religion"),
    Column("Kategorikaum", "ethnic_category"),
    Column("NoRumah", "house_no"),
    Column("alamat", "address", quoted=True),
    Column("poskod", "postcode"),
    Column("daerah", "district"),
    Column("KodLokaliti", "locality_code"),
    Column("NamaParlimen", "parliament_name"),
    Column("NamaDun", "dun_name"),
    Column("NamaPDM", "polling_district_name"),
    Column("NamaLokaliti", "locality_name"),
    Column("KategoriUNDI", "voting_category"),
    Column("NamaTM", "polling_station_name"),
    Column("MasaUndi", "voting_time"),
    Column("Saluran", "channel", parse_int_or_none),
)


def cell(values: Sequence[str], header_map: Mapping[str, int], column: str) -> str | None:
    """Value of a named column, or None when absent, out of range or empty."""
    idx = header_map.get(column)
    if idx is None or idx >= len(values):
        return None
    return values[idx] or None


def row_to_voter_values(values: Sequence[str], header_map: Mapping[str, int]) -> dict[str, object]:
    """Convert parsed cells to voter attribute values (name not validated)."""
    record: dict[str, object] = {}
    for column in VOTER_COLUMNS:
        raw = cell(values, header_map, column.header)
        record[column.attribute] = column.convert(raw) if column.convert else raw
    if record["name"] is not None:
        record["name"] = str(record["name"]).strip()
    return record


def quote_field(value: str | None) -> str:
    """Wrap a value in quotes, doubling internal quotes."""
    return '"' + (value or "").replace('"', '""') + '"'


def format_export_value(column: Column, value: object) -> str:
    """Render one voter attribute for the CSV export."""
    if column.quoted:
        return quote_field(value)  # type: ignore[arg-type]
    if value is None:
        return ""
    if isinstance(value, date):
        return value.strftime("%d/%m/%Y")
    return str(value)
