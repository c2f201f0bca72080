#!/usr/bin/env python3
"""
NSRL filter – split a file list into known and unknown software.

Reads a CSV file list (header row; Extension column or column 2, MD5 in
column 6, SHA-1 in column 7), looks up each unique hash in an NSRL-style
SQLite reference database (METADATA table, or FILE table/view), and writes
known_software.csv and unknown_software.csv with the original header.

A JSON report is always written (default: report.json).
Use --help for full options and examples.
"""

import argparse
import logging
import signal
import sqlite3
import sys
import threading
from pathlib import Path

from classify_cmd import classify_records, log_summary
from common import (
    BATCH_SIZE,
    COMMIT_INTERVAL,
    FALLBACK_RELATION,
    PREFERRED_RELATION,
    FilterError,
    MalformedRowLimitExceeded,
    NoReferenceRelation,
    parse_extensions,
    setup_logging,
    write_report,
)


EXIT_OK = 0
EXIT_ERROR = 1
EXIT_NO_RELATION = 2
EXIT_MALFORMED_ROWS = 3
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Classify a file list as known or unknown software using an '
                    'NSRL-style SQLite reference database.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Examples:
    python nsrl_filter.py db.sqlite files.csv
    python nsrl_filter.py db.sqlite files.csv exe dll sys
    python nsrl_filter.py db.sqlite files.csv --ext .exe,.dll --output-dir results
    python nsrl_filter.py db.sqlite files.csv --report run.json --log run.log

The database must contain a {PREFERRED_RELATION} table or a {FALLBACK_RELATION} table/view
with sha1 and md5 columns.
        """,
    )
    parser.add_argument(
        'db',
        type=Path,
        help='Path to the SQLite reference database',
    )
    parser.add_argument(
        'input',
        type=Path,
        help='CSV file list to classify',
    )
    parser.add_argument(
        'extensions',
        nargs='*',
        default=[],
        help='Only classify records with these extensions (case-insensitive, dot optional)',
    )
    parser.add_argument(
        '--ext',
        action='append',
        default=[],
        help='Extensions to keep (e.g. exe,.dll). Comma-separated or repeatable.',
    )
    parser.add_argument(
        '--output-dir',
        type=Path,
        default=Path('.'),
        help='Directory for known_software.csv and unknown_software.csv (default: .)',
    )
    parser.add_argument(
        '--report',
        type=Path,
        default=Path('report.json'),
        help='JSON report path (default: report.json)',
    )
    parser.add_argument(
        '--batch-size',
        type=int,
        default=BATCH_SIZE,
        help=f'Records per lookup batch (default: {BATCH_SIZE})',
    )
    parser.add_argument(
        '--commit-every',
        type=int,
        default=COMMIT_INTERVAL,
        help=f'Batches per reference transaction (default: {COMMIT_INTERVAL})',
    )
    parser.add_argument(
        '--log',
        type=Path,
        help='Write log output to this file',
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose (debug) logging',
    )
    return parser


def run(argv=None) -> int:
    """Parse arguments, run the classification and return the exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.batch_size < 1:
        parser.error('--batch-size must be at least 1')
    if args.commit_every < 1:
        parser.error('--commit-every must be at least 1')

    setup_logging(args.log, args.verbose)

    if not args.input.is_file():
        logging.error(f"Input file does not exist: {args.input}")
        return EXIT_ERROR
    if not args.db.is_file():
        logging.error(f"Reference database does not exist: {args.db}")
        return EXIT_ERROR

    extensions = parse_extensions(args.extensions + args.ext)
    if extensions:
        logging.info(f"Filtering for extensions: {', '.join(sorted(extensions))}")

    cancel_event = threading.Event()

    def request_stop(signum, frame) -> None:
        if cancel_event.is_set():
            raise KeyboardInterrupt
        logging.warning("Interrupt received; finishing current batch (press Ctrl+C again to abort)")
        cancel_event.set()

    previous_handler = signal.signal(signal.SIGINT, request_stop)
    try:
        report = classify_records(
            input_path=args.input,
            db_path=args.db,
            output_dir=args.output_dir,
            extensions=extensions,
            batch_size=args.batch_size,
            commit_interval=args.commit_every,
            cancel_event=cancel_event,
        )
    except NoReferenceRelation as exc:
        logging.error(f"Reference relation missing: {exc}")
        return EXIT_NO_RELATION
    except MalformedRowLimitExceeded as exc:
        logging.error(f"Input data error: {exc}")
        return EXIT_MALFORMED_ROWS
    except FileNotFoundError as exc:
        logging.error(str(exc))
        return EXIT_ERROR
    except FilterError as exc:
        logging.error(f"Input error: {exc}")
        return EXIT_ERROR
    except sqlite3.Error as exc:
        logging.error(f"Reference database error ({args.db}): {exc}")
        return EXIT_ERROR
    except OSError as exc:
        logging.error(f"I/O error: {exc}")
        return EXIT_ERROR
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    log_summary(report)
    write_report(report, args.report)
    if report["cancelled"]:
        return EXIT_CANCELLED
    return EXIT_OK


def main() -> None:
    """Main entry point for the script."""
    sys.exit(run())


if __name__ == "__main__":
    main()
