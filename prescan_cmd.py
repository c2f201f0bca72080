"""
Prescan: count records and unique hashes, optionally narrowed by extension.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Set, Tuple

from common import (
    PROGRESS_EVERY,
    InputLayout,
    iter_records,
    log_sampled,
    matches_extension,
    record_identity,
)


@dataclass
class PrescanResult:
    """Totals gathered before the classification pass."""
    total_records: int
    unique_hashes: int
    unique_before_filter: int
    malformed_rows: int


class MalformedRowLog:
    """Counts and sample-logs rows skipped during one prescan pass."""

    def __init__(self, pass_name: str) -> None:
        self.pass_name = pass_name
        self.count = 0

    def __call__(self, line_num: int, reason: str) -> None:
        self.count += 1
        log_sampled(
            self.count,
            f"{self.pass_name}: skipping malformed row at line {line_num}: {reason}",
        )


def count_unique_hashes(csv_path: Path, layout: InputLayout) -> Tuple[int, Set[str], int]:
    """Pass 1: return (total records, set of hash keys, malformed row count)."""
    unique: Set[str] = set()
    total = 0
    malformed = MalformedRowLog("Prescan")

    for fields in iter_records(csv_path, layout, malformed):
        identity = record_identity(fields, layout)
        if identity.has_identity:
            unique.add(identity.key)
        total += 1
        if total % PROGRESS_EVERY == 0:
            logging.info(f"Prescan progress: records={total}, unique={len(unique)}")

    return total, unique, malformed.count


def filter_hashes_by_extension(
    csv_path: Path,
    layout: InputLayout,
    unique: Set[str],
    extensions: Set[str],
) -> Set[str]:
    """Pass 2: keep hash keys whose first matching occurrence has a wanted extension.

    The first record of a hash group that matches qualifies the whole group;
    later duplicates are not evaluated again.
    """
    filtered: Set[str] = set()
    scanned = 0
    for fields in iter_records(csv_path, layout, MalformedRowLog("Extension filter")):
        identity = record_identity(fields, layout)
        if not identity.has_identity:
            continue
        scanned += 1
        if identity.key in unique and identity.key not in filtered:
            if matches_extension(fields, layout, extensions):
                filtered.add(identity.key)
        if scanned % PROGRESS_EVERY == 0:
            logging.info(f"Extension filter progress: scanned={scanned}, matched={len(filtered)}")
    return filtered


def prescan(csv_path: Path, layout: InputLayout, extensions: Set[str]) -> PrescanResult:
    """Run pass 1 and, when an extension filter is set, pass 2."""
    logging.info("Scanning input for total records and unique hashes...")
    total, unique, malformed = count_unique_hashes(csv_path, layout)
    unique_before_filter = len(unique)
    logging.info(f"Found {unique_before_filter} unique hashes in {total} total records")

    if extensions:
        logging.info(f"Filtering unique hashes by extension: {', '.join(sorted(extensions))}")
        unique = filter_hashes_by_extension(csv_path, layout, unique, extensions)
        logging.info(f"Found {len(unique)} hashes matching extension filter")

    return PrescanResult(
        total_records=total,
        unique_hashes=len(unique),
        unique_before_filter=unique_before_filter,
        malformed_rows=malformed,
    )
