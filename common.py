"""
Shared code for nsrl_filter prescan and classify: constants, types, errors,
hash identity, CSV input helpers, reporting.
"""

import csv
import json
import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set


BATCH_SIZE = 10000
COMMIT_INTERVAL = 5
MAX_MALFORMED_ROWS = 100
PROGRESS_EVERY = 10000
ERROR_LOG_SAMPLE = 5
ERROR_LOG_EVERY = 1000

EXTENSION_COLUMN = "Extension"
EXTENSION_FALLBACK_INDEX = 2
MD5_INDEX = 6
SHA1_INDEX = 7

PREFERRED_RELATION = "METADATA"
FALLBACK_RELATION = "FILE"

KNOWN_OUTPUT_NAME = "known_software.csv"
UNKNOWN_OUTPUT_NAME = "unknown_software.csv"

# Undecodable input bytes survive as lone surrogates so they can be detected per row.
INPUT_DECODE_ERRORS = "surrogateescape"
OUTPUT_LINE_TERMINATOR = "\n"

# Rows in NSRL-derived exports can carry long path fields.
csv.field_size_limit(min(sys.maxsize, 2 ** 31 - 1))


class FilterError(Exception):
    """Base class for conditions that abort a run."""


class NoReferenceRelation(FilterError):
    """Reference database has neither the preferred nor the fallback relation."""

    def __init__(self, db_path: Path) -> None:
        super().__init__(
            f"Reference database {db_path} must contain a {PREFERRED_RELATION} table "
            f"or a {FALLBACK_RELATION} table/view with sha1 and md5 columns"
        )
        self.db_path = db_path


class MalformedRowLimitExceeded(FilterError):
    """Too many unreadable rows in the input stream."""

    def __init__(self, count: int, limit: int = MAX_MALFORMED_ROWS) -> None:
        super().__init__(
            f"Aborting: {count} malformed input rows exceeds the limit of {limit}"
        )
        self.count = count
        self.limit = limit


class InputFormatError(FilterError):
    """Input file cannot be used as a record stream (e.g. no header row)."""


@dataclass(frozen=True)
class HashIdentity:
    """Dedup key and lookup pair derived from a record's digests."""
    has_identity: bool
    key: str = ""
    primary: str = ""
    secondary: str = ""


@dataclass
class InputLayout:
    """Column positions resolved from the input header."""
    header: List[str]
    extension_index: int
    md5_index: int = MD5_INDEX
    sha1_index: int = SHA1_INDEX


NO_IDENTITY = HashIdentity(has_identity=False)


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False) -> None:
    """Configure logging to file and console."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='w', encoding='utf-8'))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def normalize_extension(value: str) -> str:
    """Lowercase an extension and drop its leading dot(s)."""
    return value.strip().lower().lstrip('.')


def parse_extensions(extension_args: Iterable[str]) -> Set[str]:
    """Normalize extension arguments into a set of lowercase, dotless suffixes."""
    extensions: Set[str] = set()
    for item in extension_args:
        for part in item.split(','):
            ext = normalize_extension(part)
            if ext:
                extensions.add(ext)
    return extensions


def resolve_identity(md5: str, sha1: str) -> HashIdentity:
    """Compute the dedup key and (primary, secondary) lookup values.

    SHA-1 is preferred for the key and the primary value; MD5 for the
    secondary. A record with neither digest has no identity.
    """
    md5 = md5.strip()
    sha1 = sha1.strip()
    if not md5 and not sha1:
        return NO_IDENTITY
    primary = sha1 if sha1 else md5
    secondary = md5 if md5 else sha1
    return HashIdentity(has_identity=True, key=primary, primary=primary, secondary=secondary)


def _field(fields: List[str], index: int) -> str:
    return fields[index] if index < len(fields) else ""


def record_identity(fields: List[str], layout: InputLayout) -> HashIdentity:
    """Hash identity of a parsed input row."""
    return resolve_identity(
        _field(fields, layout.md5_index),
        _field(fields, layout.sha1_index),
    )


def record_extension(fields: List[str], layout: InputLayout) -> str:
    """Normalized extension of a parsed input row."""
    return normalize_extension(_field(fields, layout.extension_index))


def matches_extension(fields: List[str], layout: InputLayout, extensions: Set[str]) -> bool:
    """Return True if the row's extension is in the (normalized) filter set."""
    return record_extension(fields, layout) in extensions


def read_layout(csv_path: Path) -> InputLayout:
    """Read the header row and resolve the extension column."""
    with csv_path.open('r', newline='', encoding='utf-8', errors=INPUT_DECODE_ERRORS) as handle:
        try:
            header = next(csv.reader(handle))
        except StopIteration:
            raise InputFormatError(f"Input file has no header row: {csv_path}") from None
        except csv.Error as exc:
            raise InputFormatError(f"Unreadable header row in {csv_path}: {exc}") from exc

    extension_index = EXTENSION_FALLBACK_INDEX
    for index, name in enumerate(header):
        if name.strip().lower() == EXTENSION_COLUMN.lower():
            extension_index = index
            break
    return InputLayout(header=header, extension_index=extension_index)


def _has_undecodable_bytes(fields: List[str]) -> bool:
    try:
        for field in fields:
            field.encode("utf-8")
    except UnicodeEncodeError:
        return True
    return False


def iter_records(
    csv_path: Path,
    layout: InputLayout,
    on_malformed: Callable[[int, str], None],
) -> Iterator[List[str]]:
    """Yield data rows from a fresh reader over csv_path.

    Each call opens its own file handle. Rows the parser rejects, or whose
    field count differs from the header, are reported to on_malformed with
    the line number and reason and are not yielded; so are rows holding
    bytes that are not valid UTF-8. Blank lines are skipped.
    """
    width = len(layout.header)
    with csv_path.open('r', newline='', encoding='utf-8', errors=INPUT_DECODE_ERRORS) as handle:
        reader = csv.reader(handle)
        try:
            next(reader)
        except StopIteration:
            return
        while True:
            try:
                fields = next(reader)
            except StopIteration:
                return
            except csv.Error as exc:
                on_malformed(reader.line_num, str(exc))
                continue
            if not fields:
                continue
            if _has_undecodable_bytes(fields):
                on_malformed(reader.line_num, "row is not valid UTF-8")
                continue
            if len(fields) != width:
                on_malformed(
                    reader.line_num,
                    f"found record with {len(fields)} fields, header has {width}",
                )
                continue
            yield fields


def log_sampled(count: int, message: str) -> None:
    """Log the first few occurrences of a recurring problem, then one per ERROR_LOG_EVERY."""
    if count <= ERROR_LOG_SAMPLE:
        logging.warning(message)
    elif count % ERROR_LOG_EVERY == 0:
        logging.warning(f"{message} ({count} so far, further occurrences sampled)")


def percent(part: int, whole: int) -> float:
    """Percentage rounded to one decimal; 0.0 when whole is 0."""
    if not whole:
        return 0.0
    return round(part * 100.0 / whole, 1)


def build_report(
    input_path: Path,
    db_path: Path,
    relation: Optional[str],
    extensions: Set[str],
    stats: Dict[str, int],
    run_started: float,
    run_finished: float,
    mode: str,
    details: Optional[Dict[str, object]],
) -> Dict[str, object]:
    """Build JSON-compatible report."""
    report: Dict[str, object] = {
        "run_started": datetime.fromtimestamp(run_started).isoformat(),
        "run_finished": datetime.fromtimestamp(run_finished).isoformat(),
        "duration_seconds": round(run_finished - run_started, 3),
        "input": str(input_path),
        "db": str(db_path),
        "relation": relation,
        "mode": mode,
        "extensions": sorted(extensions),
        "stats": stats,
    }
    if details:
        report.update(details)
    return report


def write_report(report: Dict[str, object], report_path: Path) -> None:
    """Write report to file."""
    report_json = json.dumps(report, indent=2, sort_keys=True)
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(report_json, encoding='utf-8')
    logging.info(f"Report written to {report_path}")
