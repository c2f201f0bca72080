"""
Reference database access: relation selection, lookup indexes, digest lookups.
"""

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path

from common import FALLBACK_RELATION, PREFERRED_RELATION, NoReferenceRelation


BULK_READ_PRAGMAS = (
    "PRAGMA synchronous = OFF",
    "PRAGMA journal_mode = MEMORY",
    "PRAGMA cache_size = -2000000",
    "PRAGMA temp_store = MEMORY",
    "PRAGMA mmap_size = 30000000000",
)


@dataclass(frozen=True)
class ReferenceRelation:
    """The table or view queried for known digests."""
    name: str
    kind: str
    query: str


def connect_reference(db_path: Path) -> sqlite3.Connection:
    """Open the reference database with bulk-read tuning.

    Transactions are managed explicitly (isolation_level=None) so that a
    read transaction can span several lookup batches.
    """
    if not db_path.exists():
        raise FileNotFoundError(f"Reference database not found: {db_path}")
    conn = sqlite3.connect(str(db_path), isolation_level=None)
    conn.row_factory = sqlite3.Row
    for pragma in BULK_READ_PRAGMAS:
        try:
            conn.execute(pragma)
        except sqlite3.Error as exc:
            logging.debug(f"Ignoring {pragma!r}: {exc}")
    return conn


def _relation_kind(conn: sqlite3.Connection, name: str, kinds: tuple) -> str:
    placeholders = ", ".join("?" for _ in kinds)
    row = conn.execute(
        f"SELECT type FROM sqlite_master WHERE name = ? AND type IN ({placeholders})",
        (name, *kinds),
    ).fetchone()
    return row["type"] if row else ""


def select_relation(conn: sqlite3.Connection, db_path: Path) -> ReferenceRelation:
    """Pick the preferred table, else the fallback table/view.

    Raises NoReferenceRelation when neither exists.
    """
    candidates = (
        (PREFERRED_RELATION, ("table",)),
        (FALLBACK_RELATION, ("table", "view")),
    )
    for name, kinds in candidates:
        kind = _relation_kind(conn, name, kinds)
        if kind:
            query = f'SELECT EXISTS(SELECT 1 FROM "{name}" WHERE sha1 = ? OR md5 = ?)'
            logging.info(f"Using reference {kind}: {name}")
            return ReferenceRelation(name=name, kind=kind, query=query)
    raise NoReferenceRelation(db_path)


def _index_exists(conn: sqlite3.Connection, index_name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'index' AND name = ?",
        (index_name,),
    ).fetchone()
    return row is not None


def ensure_indexes(conn: sqlite3.Connection, relation: ReferenceRelation) -> bool:
    """Create sha1/md5 lookup indexes if missing. Returns False on failure.

    Failure only costs lookup speed, so it is logged and not raised.
    """
    try:
        for column in ("sha1", "md5"):
            index_name = f"{relation.name}_{column}_idx"
            if _index_exists(conn, index_name):
                logging.debug(f"Index {index_name} already present")
                continue
            logging.info(f"Creating index on {relation.name}.{column}...")
            conn.execute(
                f'CREATE INDEX IF NOT EXISTS "{index_name}" ON "{relation.name}" ({column})'
            )
    except sqlite3.Error as exc:
        logging.warning(f"Could not create indexes on {relation.name}: {exc}")
        return False
    logging.info("Indexes verified.")
    return True


class ReferenceLookup:
    """Existence queries against the chosen relation inside explicit transactions."""

    def __init__(self, conn: sqlite3.Connection, relation: ReferenceRelation) -> None:
        self.conn = conn
        self.relation = relation
        self.in_transaction = False

    def begin(self) -> None:
        self.conn.execute("BEGIN")
        self.in_transaction = True

    def commit(self) -> None:
        if self.in_transaction:
            self.conn.execute("COMMIT")
            self.in_transaction = False

    def exists(self, primary: str, secondary: str) -> bool:
        """True if any reference row has sha1 = primary or md5 = secondary.

        sqlite3.Error propagates; callers decide how to classify a failed lookup.
        """
        row = self.conn.execute(self.relation.query, (primary, secondary)).fetchone()
        return bool(row[0])
