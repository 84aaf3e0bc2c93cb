"""
SQLite-backed donor and research-run storage.

Schema
──────
table: donors
  id         INTEGER PRIMARY KEY
  full_name  TEXT NOT NULL
  email, address, state, notes  TEXT NULL
  high_potential_donor          INTEGER NULL  (0/1 from the latest assessment)

table: research
  id             INTEGER PRIMARY KEY AUTOINCREMENT
  subject_id     INTEGER NOT NULL   (donors.id)
  research_topic TEXT NOT NULL
  run            TEXT NOT NULL      (ResearchRun serialised as JSON)
  is_live        INTEGER NOT NULL   (1 for the current version of a subject)
  version        INTEGER NOT NULL   (1, 2, ... per subject)
  created_at     TEXT NOT NULL      (ISO-8601 UTC)

At most one row per subject has ``is_live = 1``.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from core.models import DonorProfile, ResearchRecord, ResearchRun

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path(__file__).parent.parent / "data" / "research.db"

_RESEARCH_COLUMNS = "id, subject_id, research_topic, run, is_live, version, created_at"


def _db_path() -> Path:
    """Return the database file path, honouring a DB_PATH env var if set."""
    env = os.getenv("DB_PATH")
    return Path(env) if env else DEFAULT_DB_PATH


@contextmanager
def _connect():
    """Yield a connected sqlite3.Connection, creating the file/dir if needed."""
    path = _db_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db() -> None:
    """Create the donors and research tables if they don't exist yet."""
    with _connect() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS donors (
                id        INTEGER PRIMARY KEY,
                full_name TEXT NOT NULL,
                email     TEXT,
                address   TEXT,
                state     TEXT,
                notes     TEXT,
                high_potential_donor INTEGER
            )
            """
        )
        columns = {row["name"] for row in conn.execute("PRAGMA table_info(donors)")}
        if "high_potential_donor" not in columns:
            conn.execute("ALTER TABLE donors ADD COLUMN high_potential_donor INTEGER")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS research (
                id             INTEGER PRIMARY KEY AUTOINCREMENT,
                subject_id     INTEGER NOT NULL,
                research_topic TEXT NOT NULL,
                run            TEXT NOT NULL,
                is_live        INTEGER NOT NULL DEFAULT 0,
                version        INTEGER NOT NULL,
                created_at     TEXT NOT NULL
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_research_subject ON research (subject_id, version)"
        )
    logger.info("Research DB initialised at %s", _db_path())


def _to_record(row: sqlite3.Row) -> ResearchRecord:
    return ResearchRecord(
        id=row["id"],
        subject_id=row["subject_id"],
        research_topic=row["research_topic"],
        run=ResearchRun.model_validate_json(row["run"]),
        is_live=bool(row["is_live"]),
        version=row["version"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


# ── Donors ─────────────────────────────────────────────────────────────────


def upsert_donor(donor: DonorProfile) -> None:
    """Insert or replace a donor profile."""
    with _connect() as conn:
        conn.execute(
            "INSERT OR REPLACE INTO donors "
            "(id, full_name, email, address, state, notes, high_potential_donor) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                donor.id, donor.full_name, donor.email, donor.address, donor.state, donor.notes,
                None if donor.high_potential_donor is None else int(donor.high_potential_donor),
            ),
        )


def get_donor(donor_id: int) -> DonorProfile | None:
    """Fetch a donor profile by ID, or None if not found."""
    with _connect() as conn:
        row = conn.execute(
            "SELECT id, full_name, email, address, state, notes, high_potential_donor "
            "FROM donors WHERE id = ?",
            (donor_id,),
        ).fetchone()
    if row is None:
        return None
    return DonorProfile(**dict(row))


def set_high_potential(donor_id: int, high_potential: bool) -> None:
    """Record the latest high-potential-donor assessment for *donor_id*.

    Raises:
        LookupError: If the donor does not exist.
    """
    with _connect() as conn:
        cursor = conn.execute(
            "UPDATE donors SET high_potential_donor = ? WHERE id = ?",
            (int(high_potential), donor_id),
        )
    if cursor.rowcount == 0:
        raise LookupError(f"Donor {donor_id} not found")
    logger.info("Donor id=%d high_potential_donor=%s", donor_id, high_potential)


def unresearched_donor_ids(donor_ids: Optional[Iterable[int]] = None, limit: Optional[int] = None) -> list[int]:
    """Return IDs of donors with no research rows, optionally within *donor_ids*."""
    sql = (
        "SELECT d.id FROM donors d WHERE NOT EXISTS "
        "(SELECT 1 FROM research r WHERE r.subject_id = d.id)"
    )
    params: list = []
    if donor_ids is not None:
        ids = list(donor_ids)
        if not ids:
            return []
        sql += f" AND d.id IN ({', '.join('?' for _ in ids)})"
        params.extend(ids)
    sql += " ORDER BY d.id"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(limit)

    with _connect() as conn:
        rows = conn.execute(sql, params).fetchall()
    return [row["id"] for row in rows]


# ── Research runs ──────────────────────────────────────────────────────────


def save(subject_id: int, run: ResearchRun, set_live: bool = True) -> int:
    """Persist a research run as the subject's next version.

    Args:
        subject_id: The donor the run belongs to.
        run: The completed ResearchRun.
        set_live: Mark this version live, demoting the previous live one.

    Returns:
        The integer primary key of the inserted row.
    """
    now = datetime.now(timezone.utc).isoformat()

    with _connect() as conn:
        if set_live:
            conn.execute(
                "UPDATE research SET is_live = 0 WHERE subject_id = ? AND is_live = 1",
                (subject_id,),
            )
        row = conn.execute(
            "SELECT COALESCE(MAX(version), 0) AS v FROM research WHERE subject_id = ?",
            (subject_id,),
        ).fetchone()
        version = row["v"] + 1
        cursor = conn.execute(
            "INSERT INTO research (subject_id, research_topic, run, is_live, version, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (subject_id, run.research_topic, run.model_dump_json(), int(set_live), version, now),
        )
        row_id = cursor.lastrowid

    logger.info(
        "Saved research id=%d for subject=%d version=%d live=%s",
        row_id, subject_id, version, set_live,
    )
    return row_id


def get_live(subject_id: int) -> ResearchRecord | None:
    """Return the live research version for *subject_id*, or None."""
    with _connect() as conn:
        row = conn.execute(
            f"SELECT {_RESEARCH_COLUMNS} FROM research WHERE subject_id = ? AND is_live = 1",
            (subject_id,),
        ).fetchone()
    return _to_record(row) if row else None


def get_version(subject_id: int, version: int) -> ResearchRecord | None:
    """Return a specific research version for *subject_id*, or None."""
    with _connect() as conn:
        row = conn.execute(
            f"SELECT {_RESEARCH_COLUMNS} FROM research WHERE subject_id = ? AND version = ?",
            (subject_id, version),
        ).fetchone()
    return _to_record(row) if row else None


def list_versions(subject_id: int) -> list[ResearchRecord]:
    """Return every research version for *subject_id*, newest first."""
    with _connect() as conn:
        rows = conn.execute(
            f"SELECT {_RESEARCH_COLUMNS} FROM research WHERE subject_id = ? ORDER BY version DESC",
            (subject_id,),
        ).fetchall()

    records: list[ResearchRecord] = []
    for row in rows:
        try:
            records.append(_to_record(row))
        except Exception as exc:
            logger.warning("Skipping corrupt research row id=%d: %s", row["id"], exc)
    return records


def set_live(research_id: int, subject_id: int) -> ResearchRecord:
    """Make *research_id* the live version for *subject_id*.

    Raises:
        LookupError: If the row does not exist for that subject.
    """
    with _connect() as conn:
        row = conn.execute(
            "SELECT id FROM research WHERE id = ? AND subject_id = ?",
            (research_id, subject_id),
        ).fetchone()
        if row is None:
            raise LookupError(f"Research record {research_id} not found for subject {subject_id}")
        conn.execute(
            "UPDATE research SET is_live = 0 WHERE subject_id = ? AND is_live = 1",
            (subject_id,),
        )
        conn.execute("UPDATE research SET is_live = 1 WHERE id = ?", (research_id,))
        updated = conn.execute(
            f"SELECT {_RESEARCH_COLUMNS} FROM research WHERE id = ?", (research_id,),
        ).fetchone()

    logger.info("Research id=%d is now live for subject=%d", research_id, subject_id)
    return _to_record(updated)


def delete(research_id: int) -> bool:
    """Delete a research row by ID.

    Returns:
        True if a row was deleted, False if not found.
    """
    with _connect() as conn:
        cursor = conn.execute("DELETE FROM research WHERE id = ?", (research_id,))
    deleted = cursor.rowcount > 0
    if deleted:
        logger.info("Deleted research id=%d", research_id)
    return deleted
