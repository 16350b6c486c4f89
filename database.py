"""
SQLite database layer for the train fare tracker.

Timestamps are stored as ISO-8601 UTC strings with second precision
("2025-06-15T05:00:00+00:00"), so lexical order equals chronological order
and range queries work on the raw column. Prices are stored as integer
cents and returned as Decimal.
"""
import sqlite3
import logging
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Iterable, Optional

from config import DB_PATH

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------
SCHEMA = """
PRAGMA journal_mode = WAL;
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS routes (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    origin       TEXT    NOT NULL,   -- provider station code / location id
    destination  TEXT    NOT NULL,
    origin_name  TEXT    NOT NULL,
    dest_name    TEXT    NOT NULL,
    provider     TEXT    NOT NULL,   -- "TRENITALIA" | "ITALO"
    active       INTEGER NOT NULL DEFAULT 1,
    created_at   TEXT    NOT NULL,
    UNIQUE(origin, destination, provider)
);

CREATE TABLE IF NOT EXISTS prices (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    route_id        INTEGER NOT NULL REFERENCES routes(id),
    departure_at    TEXT    NOT NULL,   -- scheduled departure, UTC
    train_number    TEXT    NOT NULL,
    train_type      TEXT    NOT NULL,
    fare_class      TEXT    NOT NULL,
    price_cents     INTEGER NOT NULL,
    available_seats INTEGER,            -- seats left in this class, null = unknown
    total_available INTEGER,            -- seats left on the train, null = unknown
    duration_min    INTEGER NOT NULL DEFAULT 0,
    scraped_at      TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_prices_route_departure
    ON prices(route_id, departure_at);

CREATE TABLE IF NOT EXISTS scrape_runs (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    started_at       TEXT NOT NULL,
    providers        TEXT NOT NULL,
    days             INTEGER NOT NULL,
    outbound_prices  INTEGER,
    return_prices    INTEGER,
    errors           INTEGER DEFAULT 0,
    duration_s       REAL
);
"""


def init_db(db_path: str = DB_PATH) -> sqlite3.Connection:
    """Create (or open) the SQLite database, apply schema, return connection."""
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.executescript(SCHEMA)
    conn.commit()
    log.info("Database ready at %s", db_path)
    return conn


def to_db_ts(ts: datetime) -> str:
    """Canonical storage form of an instant (naive values are taken as UTC)."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).replace(microsecond=0).isoformat()


def from_db_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _now_iso() -> str:
    return to_db_ts(datetime.now(timezone.utc))


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """[00:00, next 00:00) of a UTC calendar day."""
    start = datetime.combine(day, time(0, 0), tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def _price_row(row: sqlite3.Row) -> dict:
    d = dict(row)
    d["price"] = Decimal(d.pop("price_cents")) / 100
    d["departure_at"] = from_db_ts(d["departure_at"])
    d["scraped_at"] = from_db_ts(d["scraped_at"])
    return d


def _route_row(row: sqlite3.Row) -> dict:
    d = dict(row)
    d["active"] = bool(d["active"])
    return d


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
def ensure_route(
    conn: sqlite3.Connection,
    origin: str,
    destination: str,
    origin_name: str,
    dest_name: str,
    provider: str,
) -> dict:
    """
    Create the route if (origin, destination, provider) is unknown and return
    it. An existing route is returned untouched.
    """
    sql = """
    INSERT INTO routes (origin, destination, origin_name, dest_name, provider, active, created_at)
    VALUES (?, ?, ?, ?, ?, 1, ?)
    ON CONFLICT(origin, destination, provider) DO NOTHING
    """
    conn.execute(sql, (str(origin), str(destination), origin_name, dest_name, provider, _now_iso()))
    conn.commit()
    return find_route(conn, origin, destination, provider, active_only=False)


def find_route(
    conn: sqlite3.Connection,
    origin: str,
    destination: str,
    provider: str,
    active_only: bool = True,
) -> Optional[dict]:
    sql = """
    SELECT * FROM routes
    WHERE origin = ? AND destination = ? AND provider = ?
    """
    if active_only:
        sql += " AND active = 1"
    row = conn.execute(sql, (str(origin), str(destination), provider)).fetchone()
    return _route_row(row) if row else None


def get_route(conn: sqlite3.Connection, route_id: int) -> Optional[dict]:
    row = conn.execute("SELECT * FROM routes WHERE id = ?", (route_id,)).fetchone()
    return _route_row(row) if row else None


def list_active_routes(conn: sqlite3.Connection) -> list[dict]:
    cursor = conn.execute("SELECT * FROM routes WHERE active = 1 ORDER BY created_at DESC, id DESC")
    return [_route_row(row) for row in cursor.fetchall()]


def set_route_active(conn: sqlite3.Connection, route_id: int, active: bool) -> None:
    conn.execute("UPDATE routes SET active = ? WHERE id = ?", (1 if active else 0, route_id))
    conn.commit()


# ---------------------------------------------------------------------------
# Price snapshots
# ---------------------------------------------------------------------------
def insert_price(conn: sqlite3.Connection, snapshot: dict) -> int:
    """
    Append one fare snapshot and return its id.

    sqlite3.Error propagates: the scraper treats a failed insert as a failed
    date, not as a skippable row.
    """
    sql = """
    INSERT INTO prices
        (route_id, departure_at, train_number, train_type, fare_class,
         price_cents, available_seats, total_available, duration_min, scraped_at)
    VALUES
        (:route_id, :departure_at, :train_number, :train_type, :fare_class,
         :price_cents, :available_seats, :total_available, :duration_min, :scraped_at)
    """
    row = {
        "route_id": snapshot["route_id"],
        "departure_at": to_db_ts(snapshot["departure_at"]),
        "train_number": snapshot["train_number"],
        "train_type": snapshot["train_type"],
        "fare_class": snapshot["fare_class"],
        "price_cents": int((Decimal(snapshot["price"]) * 100).to_integral_value()),
        "available_seats": snapshot.get("available_seats"),
        "total_available": snapshot.get("total_available"),
        "duration_min": snapshot.get("duration_min") or 0,
        "scraped_at": to_db_ts(snapshot.get("scraped_at") or datetime.now(timezone.utc)),
    }
    cursor = conn.execute(sql, row)
    conn.commit()
    return cursor.lastrowid


def get_prices(
    conn: sqlite3.Connection,
    route_ids: Iterable[int],
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    fare_class: Optional[str] = None,
    scraped_since: Optional[datetime] = None,
) -> list[dict]:
    """
    Snapshots for the given routes with start <= departure_at < end,
    ordered by departure then capture time.
    """
    route_ids = list(route_ids)
    if not route_ids:
        return []

    conditions = [f"route_id IN ({', '.join('?' for _ in route_ids)})"]
    params: list = list(route_ids)

    if start is not None:
        conditions.append("departure_at >= ?")
        params.append(to_db_ts(start))
    if end is not None:
        conditions.append("departure_at < ?")
        params.append(to_db_ts(end))
    if fare_class:
        conditions.append("fare_class = ?")
        params.append(fare_class)
    if scraped_since is not None:
        conditions.append("scraped_at >= ?")
        params.append(to_db_ts(scraped_since))

    where = " AND ".join(conditions)
    sql = f"""
    SELECT * FROM prices
    WHERE {where}
    ORDER BY departure_at, scraped_at, id
    """
    cursor = conn.execute(sql, params)
    return [_price_row(row) for row in cursor.fetchall()]


def _class_pattern_clause(tokens: Iterable[str]) -> tuple[str, list[str]]:
    tokens = [t.lower() for t in tokens if t]
    if not tokens:
        raise ValueError("at least one class-name token is required")
    clause = " OR ".join("instr(lower(fare_class), ?) > 0" for _ in tokens)
    return f"({clause})", tokens


def count_prices_by_class_pattern(conn: sqlite3.Connection, tokens: Iterable[str]) -> int:
    clause, params = _class_pattern_clause(tokens)
    row = conn.execute(f"SELECT COUNT(*) FROM prices WHERE {clause}", params).fetchone()
    return row[0] if row else 0


def delete_prices_by_class_pattern(conn: sqlite3.Connection, tokens: Iterable[str]) -> int:
    """Delete snapshots whose fare class contains any token (case-insensitive)."""
    clause, params = _class_pattern_clause(tokens)
    cursor = conn.execute(f"DELETE FROM prices WHERE {clause}", params)
    conn.commit()
    log.info("Deleted %d snapshots matching %s", cursor.rowcount, params)
    return cursor.rowcount


def delete_prices_for_date(conn: sqlite3.Connection, route_ids: Iterable[int], day: date) -> int:
    """Delete every snapshot of the given routes departing on `day` (UTC)."""
    route_ids = list(route_ids)
    if not route_ids:
        return 0
    start, end = day_bounds(day)
    placeholders = ", ".join("?" for _ in route_ids)
    sql = f"""
    DELETE FROM prices
    WHERE route_id IN ({placeholders})
      AND departure_at >= ? AND departure_at < ?
    """
    cursor = conn.execute(sql, [*route_ids, to_db_ts(start), to_db_ts(end)])
    conn.commit()
    return cursor.rowcount


def last_scraped_at(conn: sqlite3.Connection) -> Optional[datetime]:
    row = conn.execute("SELECT MAX(scraped_at) FROM prices").fetchone()
    return from_db_ts(row[0]) if row and row[0] else None


def count_prices(conn: sqlite3.Connection) -> int:
    """Return total snapshot count (for startup info messages)."""
    row = conn.execute("SELECT COUNT(*) FROM prices").fetchone()
    return row[0] if row else 0


# ---------------------------------------------------------------------------
# Scrape runs
# ---------------------------------------------------------------------------
def log_scrape_run(conn: sqlite3.Connection, run: dict) -> None:
    """Record metadata about a completed scrape run."""
    sql = """
    INSERT INTO scrape_runs
        (started_at, providers, days, outbound_prices, return_prices, errors, duration_s)
    VALUES
        (:started_at, :providers, :days, :outbound_prices, :return_prices, :errors, :duration_s)
    """
    try:
        conn.execute(sql, run)
        conn.commit()
    except sqlite3.Error as exc:
        log.error("log_scrape_run failed: %s", exc)
