"""SQLite persistence for listings, recommendation runs and their matches."""
from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from jobby.errors import DuplicateListingError, StoreError
from jobby.log import get_logger
from jobby.models import RUN_COMPLETED, TERMINAL_STATUSES, Listing, Match, Run
from jobby.retry import retry

log = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS listings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source TEXT NOT NULL,
    source_job_id TEXT,
    title TEXT NOT NULL,
    company TEXT NOT NULL,
    company_logo TEXT,
    location TEXT NOT NULL DEFAULT '',
    city TEXT,
    state TEXT,
    country TEXT,
    is_remote INTEGER NOT NULL DEFAULT 0,
    description TEXT NOT NULL DEFAULT '',
    highlights_json TEXT NOT NULL DEFAULT '{}',
    benefits_json TEXT NOT NULL DEFAULT '[]',
    salary_min REAL,
    salary_max REAL,
    salary_period TEXT,
    employment_type TEXT,
    apply_url TEXT NOT NULL DEFAULT '',
    canonical_url TEXT,
    fingerprint TEXT NOT NULL,
    posted_at TEXT,
    discovered_at TEXT NOT NULL,
    ignored INTEGER NOT NULL DEFAULT 0
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_listings_source_id
    ON listings (source, source_job_id) WHERE source_job_id IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS ux_listings_canonical_url
    ON listings (canonical_url) WHERE canonical_url IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS ux_listings_fingerprint
    ON listings (fingerprint);

CREATE TABLE IF NOT EXISTS runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    status TEXT NOT NULL,
    run_at TEXT NOT NULL,
    total_fetched INTEGER NOT NULL DEFAULT 0,
    new_jobs INTEGER NOT NULL DEFAULT 0,
    duplicates INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    params_json TEXT NOT NULL DEFAULT '{}',
    cancel_requested INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS matches (
    run_id INTEGER NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
    listing_id INTEGER NOT NULL REFERENCES listings(id) ON DELETE CASCADE,
    score REAL NOT NULL,
    rank INTEGER,
    PRIMARY KEY (run_id, listing_id)
);
"""

_RUN_FIELDS = frozenset(
    {"status", "total_fetched", "new_jobs", "duplicates", "error_message", "params_json"}
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _is_locked(exc: BaseException) -> bool:
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


class SQLiteStore:
    """Listing, match and run store.

    One connection guarded by a re-entrant lock; safe to share between the
    foreground caller and background run threads.
    """

    def __init__(self, database_path: str | Path) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection is not initialized")
        return self._connection

    def connect(self) -> "SQLiteStore":
        with self._lock:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(
                self.database_path, check_same_thread=False, timeout=5
            )
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys=ON")
            self._connection.executescript(_SCHEMA)
            self._connection.commit()
        return self

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    def __enter__(self) -> "SQLiteStore":
        return self.connect()

    def __exit__(self, *_: object) -> None:
        self.close()

    @contextmanager
    def _guard(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self.connection
            except sqlite3.Error as exc:
                self.connection.rollback()
                raise StoreError(str(exc)) from exc

    @retry(max_attempts=3, retryable=(sqlite3.OperationalError,), retry_if=_is_locked)
    def _write(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            cursor = self.connection.execute(sql, tuple(params))
            self.connection.commit()
            return cursor

    # -- listings -----------------------------------------------------------

    def _to_listing(self, row: sqlite3.Row) -> Listing:
        return Listing(
            id=row["id"],
            source=row["source"],
            source_job_id=row["source_job_id"],
            title=row["title"],
            company=row["company"],
            company_logo=row["company_logo"],
            location=row["location"],
            city=row["city"],
            state=row["state"],
            country=row["country"],
            is_remote=bool(row["is_remote"]),
            description=row["description"],
            highlights=json.loads(row["highlights_json"] or "{}"),
            benefits=json.loads(row["benefits_json"] or "[]"),
            salary_min=row["salary_min"],
            salary_max=row["salary_max"],
            salary_period=row["salary_period"],
            employment_type=row["employment_type"],
            apply_url=row["apply_url"],
            canonical_url=row["canonical_url"],
            fingerprint=row["fingerprint"],
            posted_at=_dt(row["posted_at"]),
            discovered_at=_dt(row["discovered_at"]),
            ignored=bool(row["ignored"]),
        )

    def _find_one(self, where: str, params: tuple[Any, ...]) -> Listing | None:
        with self._guard() as conn:
            row = conn.execute(
                f"SELECT * FROM listings WHERE {where} ORDER BY id LIMIT 1", params
            ).fetchone()
        return self._to_listing(row) if row else None

    def find_listing_by_source_id(self, source: str, source_job_id: str) -> Listing | None:
        return self._find_one("source = ? AND source_job_id = ?", (source, source_job_id))

    def find_listing_by_canonical_url(self, canonical_url: str) -> Listing | None:
        return self._find_one("canonical_url = ?", (canonical_url,))

    def find_listing_by_fingerprint(self, fingerprint: str) -> Listing | None:
        return self._find_one("fingerprint = ?", (fingerprint,))

    def get_listing(self, listing_id: int) -> Listing | None:
        return self._find_one("id = ?", (listing_id,))

    def create_listing(self, listing: Listing) -> int:
        with self._guard() as conn:
            try:
                cursor = self._write(
                    """
                    INSERT INTO listings (
                        source, source_job_id, title, company, company_logo,
                        location, city, state, country, is_remote, description,
                        highlights_json, benefits_json, salary_min, salary_max,
                        salary_period, employment_type, apply_url, canonical_url,
                        fingerprint, posted_at, discovered_at, ignored
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        listing.source,
                        listing.source_job_id,
                        listing.title,
                        listing.company,
                        listing.company_logo,
                        listing.location,
                        listing.city,
                        listing.state,
                        listing.country,
                        int(listing.is_remote),
                        listing.description,
                        json.dumps(listing.highlights),
                        json.dumps(listing.benefits),
                        listing.salary_min,
                        listing.salary_max,
                        listing.salary_period,
                        listing.employment_type,
                        listing.apply_url,
                        listing.canonical_url,
                        listing.fingerprint,
                        _iso(listing.posted_at),
                        _iso(listing.discovered_at) or _now_iso(),
                        int(listing.ignored),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                conn.rollback()
                raise DuplicateListingError(str(exc)) from exc
        listing.id = int(cursor.lastrowid)
        return listing.id

    def get_listings(self, listing_ids: Iterable[int]) -> list[Listing]:
        ids = list(dict.fromkeys(listing_ids))
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        with self._guard() as conn:
            rows = conn.execute(
                f"SELECT * FROM listings WHERE id IN ({placeholders}) ORDER BY id", ids
            ).fetchall()
        return [self._to_listing(r) for r in rows]

    def find_listings(
        self,
        *,
        ignored: bool | None = None,
        posted_since: datetime | None = None,
        discovered_since: datetime | None = None,
    ) -> list[Listing]:
        clauses: list[str] = []
        params: list[Any] = []
        if ignored is not None:
            clauses.append("ignored = ?")
            params.append(int(ignored))
        if posted_since is not None:
            clauses.append("(posted_at IS NULL OR posted_at >= ?)")
            params.append(_iso(posted_since))
        if discovered_since is not None:
            clauses.append("discovered_at >= ?")
            params.append(_iso(discovered_since))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._guard() as conn:
            rows = conn.execute(f"SELECT * FROM listings {where} ORDER BY id", params).fetchall()
        return [self._to_listing(r) for r in rows]

    def count_listings(self, *, ignored: bool | None = None) -> int:
        with self._guard() as conn:
            if ignored is None:
                row = conn.execute("SELECT COUNT(1) AS c FROM listings").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(1) AS c FROM listings WHERE ignored = ?", (int(ignored),)
                ).fetchone()
        return int(row["c"])

    def set_listing_ignored(self, listing_id: int, ignored: bool = True) -> bool:
        with self._guard():
            cursor = self._write(
                "UPDATE listings SET ignored = ? WHERE id = ?", (int(ignored), listing_id)
            )
        return cursor.rowcount > 0

    # -- matches ------------------------------------------------------------

    def upsert_match(self, run_id: int, listing_id: int, score: float, rank: int | None = None) -> None:
        with self._guard():
            self._write(
                """
                INSERT INTO matches (run_id, listing_id, score, rank)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(run_id, listing_id) DO UPDATE SET
                    score = excluded.score,
                    rank = excluded.rank
                """,
                (run_id, listing_id, score, rank),
            )

    def delete_matches_for_listings(self, listing_ids: Iterable[int]) -> int:
        ids = list(dict.fromkeys(listing_ids))
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        with self._guard():
            cursor = self._write(f"DELETE FROM matches WHERE listing_id IN ({placeholders})", ids)
        return cursor.rowcount

    def delete_run_matches(self, run_id: int, listing_ids: Iterable[int]) -> int:
        ids = list(dict.fromkeys(listing_ids))
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        with self._guard():
            cursor = self._write(
                f"DELETE FROM matches WHERE run_id = ? AND listing_id IN ({placeholders})",
                (run_id, *ids),
            )
        return cursor.rowcount

    def matches_for_run(self, run_id: int) -> list[Match]:
        with self._guard() as conn:
            rows = conn.execute(
                """
                SELECT run_id, listing_id, score, rank FROM matches
                WHERE run_id = ?
                ORDER BY score DESC, listing_id ASC
                """,
                (run_id,),
            ).fetchall()
        return [Match(**dict(r)) for r in rows]

    def best_matches(self, *, posted_since: datetime | None = None) -> list[Match]:
        """Highest score per listing across completed runs, ignored listings excluded."""
        params: list[Any] = [RUN_COMPLETED]
        posted_clause = ""
        if posted_since is not None:
            posted_clause = "AND (l.posted_at IS NULL OR l.posted_at >= ?)"
            params.append(_iso(posted_since))
        with self._guard() as conn:
            rows = conn.execute(
                f"""
                SELECT run_id, listing_id, score, rank FROM (
                    SELECT m.run_id, m.listing_id, m.score, m.rank,
                           ROW_NUMBER() OVER (
                               PARTITION BY m.listing_id
                               ORDER BY m.score DESC, m.run_id DESC
                           ) AS rn
                    FROM matches m
                    JOIN runs r ON r.id = m.run_id
                    JOIN listings l ON l.id = m.listing_id
                    WHERE r.status = ? AND l.ignored = 0 {posted_clause}
                )
                WHERE rn = 1
                ORDER BY score DESC, listing_id ASC
                """,
                params,
            ).fetchall()
        return [Match(**dict(r)) for r in rows]

    # -- runs ---------------------------------------------------------------

    def _to_run(self, row: sqlite3.Row) -> Run:
        return Run(
            id=row["id"],
            status=row["status"],
            run_at=_dt(row["run_at"]),
            total_fetched=row["total_fetched"],
            new_jobs=row["new_jobs"],
            duplicates=row["duplicates"],
            error_message=row["error_message"],
            params_json=row["params_json"],
            cancel_requested=bool(row["cancel_requested"]),
        )

    def create_run(self, status: str, params: dict[str, Any] | None = None) -> Run:
        with self._guard():
            cursor = self._write(
                "INSERT INTO runs (status, run_at, params_json) VALUES (?, ?, ?)",
                (status, _now_iso(), json.dumps(params or {})),
            )
        run = self.get_run(int(cursor.lastrowid))
        if run is None:
            raise StoreError("Run insert did not persist")
        return run

    def update_run(self, run_id: int, **changes: Any) -> Run:
        unknown = set(changes) - _RUN_FIELDS
        if unknown:
            raise ValueError(f"Unknown run fields: {sorted(unknown)}")
        with self._lock:
            status = changes.get("status")
            current = self.get_run(run_id) if status is not None else None
            # terminal runs never change status again
            if current is not None and current.status in TERMINAL_STATUSES and status != current.status:
                raise StoreError(f"Run {run_id} is already {current.status}; cannot move to {status}")
            if changes:
                assignments = ", ".join(f"{k} = ?" for k in changes)
                with self._guard():
                    self._write(
                        f"UPDATE runs SET {assignments} WHERE id = ?", (*changes.values(), run_id)
                    )
            run = self.get_run(run_id)
        if run is None:
            raise StoreError(f"Run {run_id} does not exist")
        return run

    def get_run(self, run_id: int) -> Run | None:
        with self._guard() as conn:
            row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
        return self._to_run(row) if row else None

    def latest_run(self, status: str | None = None) -> Run | None:
        with self._guard() as conn:
            if status is None:
                row = conn.execute("SELECT * FROM runs ORDER BY run_at DESC, id DESC LIMIT 1").fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM runs WHERE status = ? ORDER BY run_at DESC, id DESC LIMIT 1",
                    (status,),
                ).fetchone()
        return self._to_run(row) if row else None

    def request_cancel(self, run_id: int) -> bool:
        with self._guard():
            cursor = self._write("UPDATE runs SET cancel_requested = 1 WHERE id = ?", (run_id,))
        return cursor.rowcount > 0

    def cancel_requested(self, run_id: int) -> bool:
        with self._guard() as conn:
            row = conn.execute("SELECT cancel_requested FROM runs WHERE id = ?", (run_id,)).fetchone()
        return bool(row and row["cancel_requested"])
