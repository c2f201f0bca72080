"""
Classify command: split an input file list into known and unknown records
by looking up each unique hash in the reference database.
"""

import csv
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, TextIO

from common import (
    BATCH_SIZE,
    COMMIT_INTERVAL,
    INPUT_DECODE_ERRORS,
    KNOWN_OUTPUT_NAME,
    MAX_MALFORMED_ROWS,
    OUTPUT_LINE_TERMINATOR,
    PROGRESS_EVERY,
    UNKNOWN_OUTPUT_NAME,
    InputLayout,
    MalformedRowLimitExceeded,
    build_report,
    iter_records,
    log_sampled,
    matches_extension,
    percent,
    read_layout,
    record_identity,
)
from prescan_cmd import prescan
from reference_db import ReferenceLookup, connect_reference, ensure_indexes, select_relation


class ResultWriter:
    """Append-only CSV sink that starts with the input header."""

    def __init__(self, path: Path, header: List[str]) -> None:
        self.path = path
        path.parent.mkdir(parents=True, exist_ok=True)
        self._handle: TextIO = path.open(
            'w', newline='', encoding='utf-8', errors=INPUT_DECODE_ERRORS
        )
        self._writer = csv.writer(self._handle, lineterminator=OUTPUT_LINE_TERMINATOR)
        self._writer.writerow(header)
        self.rows = 0

    def write(self, fields: List[str]) -> None:
        self._writer.writerow(fields)
        self.rows += 1

    def flush(self) -> None:
        self._handle.flush()

    def close(self) -> None:
        self._handle.close()


def _process_batch(
    batch: List[List[str]],
    layout: InputLayout,
    lookup: ReferenceLookup,
    known_writer: ResultWriter,
    unknown_writer: ResultWriter,
    stats: Dict[str, int],
    processed_hashes: Set[str],
) -> None:
    """Route each record of a batch to the known or unknown output."""
    for fields in batch:
        identity = record_identity(fields, layout)
        if not identity.has_identity:
            unknown_writer.write(fields)
            stats["unknown"] += 1
            stats["empty_hash"] += 1
            continue

        if identity.key in processed_hashes:
            stats["duplicates"] += 1
            continue
        processed_hashes.add(identity.key)
        stats["unique_processed"] += 1

        try:
            is_known = lookup.exists(identity.primary, identity.secondary)
        except sqlite3.Error as exc:
            stats["lookup_errors"] += 1
            log_sampled(
                stats["lookup_errors"],
                f"Query error: {exc} (primary={identity.primary}, secondary={identity.secondary})",
            )
            is_known = False

        if is_known:
            known_writer.write(fields)
            stats["known"] += 1
        else:
            unknown_writer.write(fields)
            stats["unknown"] += 1


def _build_summary(stats: Dict[str, int], elapsed: float) -> Dict[str, object]:
    classified = stats["known"] + stats["unknown"]
    processed = stats["records_processed"]
    return {
        "classified": classified,
        "known_percent": percent(stats["known"], classified),
        "unknown_percent": percent(stats["unknown"], classified),
        "empty_hash_percent": percent(stats["empty_hash"], processed),
        "duplicate_percent": percent(stats["duplicates"], processed),
        "unique_percent": percent(stats["unique_processed"], processed),
        "errors": stats["malformed_rows"] + stats["lookup_errors"],
        "records_per_second": round(processed / elapsed, 1) if elapsed > 0 else 0.0,
    }


def log_summary(report: Dict[str, object]) -> None:
    """Log a human-readable summary of a classify report."""
    stats = report["stats"]
    summary = report["summary"]
    logging.info("Detailed Summary:")
    logging.info(f"  Total records processed: {stats['records_processed']}")
    logging.info(
        f"  Unique hash values: {stats['unique_processed']} ({summary['unique_percent']}%)"
    )
    logging.info(f"  Known software: {stats['known']} ({summary['known_percent']}%)")
    logging.info(f"  Unknown software: {stats['unknown']} ({summary['unknown_percent']}%)")
    logging.info(
        f"  Records with empty hashes: {stats['empty_hash']} ({summary['empty_hash_percent']}%)"
    )
    logging.info(
        f"  Duplicate hash values: {stats['duplicates']} ({summary['duplicate_percent']}%)"
    )
    if stats["filtered_out"]:
        logging.info(f"  Excluded by extension: {stats['filtered_out']}")
    if stats["malformed_rows"]:
        logging.info(f"  Malformed rows skipped: {stats['malformed_rows']}")
    if stats["lookup_errors"]:
        logging.info(f"  Query errors encountered: {stats['lookup_errors']}")
    logging.info(f"  Processing speed: {summary['records_per_second']:.0f} records/second")
    logging.info(f"  Total processing time: {report['duration_seconds']:.2f} seconds")


def classify_records(
    input_path: Path,
    db_path: Path,
    output_dir: Path,
    extensions: Set[str],
    batch_size: int = BATCH_SIZE,
    commit_interval: int = COMMIT_INTERVAL,
    progress_callback: Optional[Callable[[int, Dict[str, int]], None]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Dict[str, object]:
    """Prescan the input, then classify each unique record as known or unknown.

    Lookups run in batches of batch_size records; the reference read
    transaction is committed every commit_interval batches and once more at
    the end. A set cancel_event stops the run at the next batch boundary with
    the open transaction committed and the outputs closed.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    if commit_interval < 1:
        raise ValueError(f"commit_interval must be positive, got {commit_interval}")
    if not input_path.exists():
        raise FileNotFoundError(f"Input file not found: {input_path}")

    stats = {
        "total_records": 0,
        "unique_hashes": 0,
        "records_processed": 0,
        "unique_processed": 0,
        "known": 0,
        "unknown": 0,
        "empty_hash": 0,
        "duplicates": 0,
        "filtered_out": 0,
        "malformed_rows": 0,
        "lookup_errors": 0,
        "batches": 0,
        "commits": 0,
    }
    run_started = time.time()
    cancelled = False

    conn = connect_reference(db_path)
    try:
        relation = select_relation(conn, db_path)
        ensure_indexes(conn, relation)

        layout = read_layout(input_path)
        prescan_result = prescan(input_path, layout, extensions)
        stats["total_records"] = prescan_result.total_records
        stats["unique_hashes"] = prescan_result.unique_hashes

        known_path = output_dir / KNOWN_OUTPUT_NAME
        unknown_path = output_dir / UNKNOWN_OUTPUT_NAME
        known_writer = ResultWriter(known_path, layout.header)
        try:
            unknown_writer = ResultWriter(unknown_path, layout.header)
        except OSError:
            known_writer.close()
            raise

        lookup = ReferenceLookup(conn, relation)
        processed_hashes: Set[str] = set()
        batch: List[List[str]] = []
        batches_since_commit = 0
        last_progress_log = 0

        def on_malformed(line_num: int, reason: str) -> None:
            stats["malformed_rows"] += 1
            log_sampled(
                stats["malformed_rows"],
                f"Skipping malformed row at line {line_num}: {reason}",
            )
            if stats["malformed_rows"] > MAX_MALFORMED_ROWS:
                raise MalformedRowLimitExceeded(stats["malformed_rows"])

        def commit() -> None:
            lookup.commit()
            known_writer.flush()
            unknown_writer.flush()
            stats["commits"] += 1
            logging.debug(f"Committed after {stats['batches']} batches")

        def log_progress() -> None:
            nonlocal last_progress_log
            if stats["records_processed"] - last_progress_log >= PROGRESS_EVERY:
                elapsed = time.time() - run_started
                rate = stats["records_processed"] / elapsed if elapsed > 0 else 0.0
                logging.info(
                    f"Progress: records={stats['records_processed']}, "
                    f"unique={stats['unique_processed']}/{stats['unique_hashes']}, "
                    f"known={stats['known']}, unknown={stats['unknown']}, "
                    f"{rate:.0f} records/sec"
                )
                last_progress_log = stats["records_processed"]

        def flush_batch() -> None:
            nonlocal batches_since_commit
            if not batch:
                return
            _process_batch(
                batch, layout, lookup, known_writer, unknown_writer, stats, processed_hashes
            )
            stats["records_processed"] += len(batch)
            stats["batches"] += 1
            batch.clear()
            batches_since_commit += 1
            if batches_since_commit >= commit_interval:
                commit()
                lookup.begin()
                batches_since_commit = 0
            log_progress()
            if progress_callback:
                progress_callback(stats["records_processed"], dict(stats))

        logging.info("Starting batch processing...")
        lookup.begin()
        try:
            for fields in iter_records(input_path, layout, on_malformed):
                if extensions and not matches_extension(fields, layout, extensions):
                    stats["filtered_out"] += 1
                    continue
                batch.append(fields)
                if len(batch) >= batch_size:
                    flush_batch()
                    if cancel_event is not None and cancel_event.is_set():
                        cancelled = True
                        logging.warning("Cancellation requested; stopping after current batch")
                        break
            if not cancelled:
                flush_batch()
            commit()
        finally:
            if lookup.in_transaction:
                try:
                    lookup.commit()
                except sqlite3.Error as exc:
                    logging.warning(f"Could not commit reference transaction: {exc}")
            known_writer.close()
            unknown_writer.close()
    finally:
        conn.close()

    run_finished = time.time()
    details: Dict[str, object] = {
        "summary": _build_summary(stats, run_finished - run_started),
        "outputs": {"known": str(known_path), "unknown": str(unknown_path)},
        "cancelled": cancelled,
        "batch_size": batch_size,
        "commit_interval": commit_interval,
    }
    report = build_report(
        input_path=input_path,
        db_path=db_path,
        relation=relation.name,
        extensions=extensions,
        stats=stats,
        run_started=run_started,
        run_finished=run_finished,
        mode="classify",
        details=details,
    )
    if progress_callback:
        progress_callback(stats["records_processed"], dict(stats))
    return report
