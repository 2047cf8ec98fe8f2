"""
database.py - SQLite storage for weekly clinic metrics.
Holds one metrics row per reporting week, the membership registry, services
flagged for review, the service-to-bin mapping with the services it missed,
and the upload log.
"""

import json
import sqlite3
import os
import logging
from datetime import datetime
from decimal import Decimal
from contextlib import contextmanager

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("DB_PATH", "/data/clinic.db")

REVENUE_COLUMNS = (
    "actual_weekly_revenue", "actual_monthly_revenue",
    "infusion_revenue_weekly", "infusion_revenue_monthly",
    "injection_revenue_weekly", "injection_revenue_monthly",
    "membership_revenue_weekly", "membership_revenue_monthly",
    "weight_management_revenue_weekly", "weight_management_revenue_monthly",
)

COUNT_COLUMNS = tuple(
    f"{kind}_{part}_{period}"
    for kind in ("iv_infusions", "injections", "drip_iv")
    for part in ("weekday", "weekend")
    for period in ("weekly", "monthly")
) + tuple(
    f"hormone_{stage}_{sex}_{period}"
    for stage in ("initial", "followup")
    for sex in ("female", "male")
    for period in ("weekly", "monthly")
) + (
    "weight_loss_consults_weekly", "weight_loss_consults_monthly",
    "weight_loss_injections_weekly", "weight_loss_injections_monthly",
    "unique_customers_weekly", "unique_customers_monthly",
    "member_customers_weekly", "non_member_customers_weekly",
    "new_individual_members_weekly", "new_family_members_weekly",
    "new_concierge_members_weekly", "new_corporate_members_weekly",
    "new_individual_members_monthly", "new_family_members_monthly",
    "new_concierge_members_monthly", "new_corporate_members_monthly",
    "total_drip_iv_members", "individual_memberships", "family_memberships",
    "family_concierge_memberships", "drip_concierge_memberships",
    "concierge_memberships", "corporate_memberships",
)

JSON_COLUMNS = (
    "category_revenue_weekly", "category_revenue_monthly",
    "weight_management_breakdown_weekly",
    "service_counts_weekly", "service_counts_monthly",
    "flagged_services", "drop_counts",
    "bin_revenue_perf_weekly", "bin_service_volume_weekly", "bin_customer_weekly",
)

TEXT_COLUMNS = ("month_start", "month_end", "source_file", "new_members_source")

METRIC_COLUMNS = TEXT_COLUMNS + REVENUE_COLUMNS + COUNT_COLUMNS + JSON_COLUMNS


def _ensure_dir():
    d = os.path.dirname(DB_PATH)
    if d and not os.path.exists(d):
        os.makedirs(d, exist_ok=True)


@contextmanager
def get_db(immediate=False):
    """Connection that commits on success and rolls back on any error.

    ``immediate`` takes the write lock up front (BEGIN IMMEDIATE) so every
    read and write inside the block is one serialized transaction.
    """
    _ensure_dir()
    conn = sqlite3.connect(DB_PATH, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    try:
        if immediate:
            conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _column_types():
    return (
        [(c, "TEXT") for c in TEXT_COLUMNS]
        + [(c, "REAL NOT NULL DEFAULT 0") for c in REVENUE_COLUMNS]
        + [(c, "INTEGER NOT NULL DEFAULT 0") for c in COUNT_COLUMNS]
        + [(c, "TEXT NOT NULL DEFAULT '{}'") for c in JSON_COLUMNS]
    )


def _add_missing_columns(conn):
    existing = {r["name"] for r in conn.execute("PRAGMA table_info(weekly_metrics)")}
    for name, decl in _column_types():
        if name not in existing:
            conn.execute(f"ALTER TABLE weekly_metrics ADD COLUMN {name} {decl}")
            logger.info("Added weekly_metrics.%s", name)


def init_db():
    _ensure_dir()
    columns = ",\n".join(
        f"                {name} {decl}" for name, decl in _column_types()
    )
    with get_db() as conn:
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS weekly_metrics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                week_start TEXT NOT NULL,
                week_end TEXT NOT NULL,
{columns},
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (week_start, week_end)
            )
        """)
        _add_missing_columns(conn)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS membership_registry (
                member_key TEXT PRIMARY KEY,
                patient TEXT NOT NULL,
                membership_type TEXT NOT NULL,
                title_raw TEXT NOT NULL DEFAULT '',
                start_date TEXT NOT NULL,
                first_seen_week TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_registry_type
            ON membership_registry(membership_type)
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS flagged_services (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                week_start TEXT NOT NULL,
                week_end TEXT NOT NULL,
                description TEXT NOT NULL,
                categories TEXT NOT NULL,
                chosen_category TEXT NOT NULL,
                created_at TEXT NOT NULL,
                UNIQUE (week_start, week_end, description)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS file_uploads (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                filename TEXT NOT NULL,
                file_type TEXT NOT NULL,
                week_start TEXT,
                week_end TEXT,
                rows_read INTEGER NOT NULL DEFAULT 0,
                records INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                error TEXT DEFAULT '',
                uploaded_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS service_mapping (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                service_name TEXT NOT NULL,
                service_type TEXT NOT NULL DEFAULT '',
                normalized_service_name TEXT NOT NULL,
                normalized_service_type TEXT NOT NULL DEFAULT '',
                default_charge REAL,
                revenue_perf_bin TEXT,
                service_volume_bin TEXT,
                customer_bin TEXT,
                updated_at TEXT NOT NULL,
                UNIQUE (normalized_service_name, normalized_service_type)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS mapping_loads (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source_file TEXT NOT NULL,
                row_count INTEGER NOT NULL,
                mapping_hash TEXT NOT NULL,
                loaded_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS unmapped_services (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                week_start TEXT NOT NULL,
                normalized_service_name TEXT NOT NULL,
                normalized_service_type TEXT NOT NULL DEFAULT '',
                description TEXT NOT NULL,
                occurrences INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                UNIQUE (week_start, normalized_service_name, normalized_service_type)
            )
        """)
        logger.info("Database initialized at %s", DB_PATH)


def _json_default(value):
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def _to_column(name, value):
    if name in JSON_COLUMNS:
        return json.dumps(value, default=_json_default, sort_keys=True)
    if isinstance(value, Decimal):
        return float(value.quantize(Decimal("0.01")))
    return value


def _from_row(row):
    data = dict(row)
    for c in JSON_COLUMNS:
        if c in data and data[c]:
            data[c] = json.loads(data[c])
    return data


# ── Weekly metrics ──────────────────────────────────────────────────────────

def upsert_weekly_metrics(conn, metrics):
    """Insert or replace the row for metrics' (week_start, week_end).

    Only the columns present in ``metrics`` are written, so a roster-only
    run leaves the revenue columns of an existing week untouched.
    """
    now = datetime.now().isoformat()
    columns = [c for c in METRIC_COLUMNS if c in metrics]
    values = [_to_column(c, metrics[c]) for c in columns]
    names = ["week_start", "week_end", *columns, "created_at", "updated_at"]
    updates = ", ".join(f"{c} = excluded.{c}" for c in columns + ["updated_at"])
    cur = conn.execute(f"""
        INSERT INTO weekly_metrics ({', '.join(names)})
        VALUES ({', '.join('?' for _ in names)})
        ON CONFLICT (week_start, week_end) DO UPDATE SET {updates}
    """, [metrics["week_start"], metrics["week_end"], *values, now, now])
    logger.info("Saved weekly metrics for %s to %s (%d columns)",
                metrics["week_start"], metrics["week_end"], len(columns))
    return cur.lastrowid


def new_members_source(conn, week_start, week_end):
    """Where a stored week's new-member counts came from: "roster", "revenue" or None."""
    row = conn.execute(
        "SELECT new_members_source FROM weekly_metrics WHERE week_start = ? AND week_end = ?",
        (week_start, week_end)
    ).fetchone()
    return row["new_members_source"] if row else None


def get_weekly_metrics(week_start, week_end=None):
    with get_db() as conn:
        if week_end:
            row = conn.execute(
                "SELECT * FROM weekly_metrics WHERE week_start = ? AND week_end = ?",
                (week_start, week_end)
            ).fetchone()
        else:
            row = conn.execute(
                "SELECT * FROM weekly_metrics WHERE week_start = ?", (week_start,)
            ).fetchone()
    return _from_row(row) if row else None


def list_weeks():
    with get_db() as conn:
        rows = conn.execute("""
            SELECT week_start, week_end, actual_weekly_revenue, updated_at
            FROM weekly_metrics ORDER BY week_start DESC
        """).fetchall()
    return [dict(r) for r in rows]


def get_recent_weeks(weeks=12):
    """Full metrics rows for the most recent N weeks, newest first."""
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM weekly_metrics ORDER BY week_start DESC LIMIT ?", (weeks,)
        ).fetchall()
    return [_from_row(r) for r in rows]


# ── Membership registry ─────────────────────────────────────────────────────

def insert_membership_if_absent(conn, entry, first_seen_week):
    """True when the key was new and got inserted."""
    cur = conn.execute("""
        INSERT OR IGNORE INTO membership_registry
        (member_key, patient, membership_type, title_raw, start_date, first_seen_week, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    """, (
        entry.member_key,
        entry.patient,
        entry.membership_type,
        entry.title_raw,
        entry.start_date.isoformat(),
        first_seen_week.isoformat(),
        datetime.now().isoformat(),
    ))
    return cur.rowcount == 1


def count_registry(membership_type=None):
    with get_db() as conn:
        if membership_type:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM membership_registry WHERE membership_type = ?",
                (membership_type,)
            ).fetchone()
        else:
            row = conn.execute("SELECT COUNT(*) AS n FROM membership_registry").fetchone()
    return row["n"]


# ── Review flags ────────────────────────────────────────────────────────────

def replace_flagged_services(conn, week_start, week_end, flagged):
    now = datetime.now().isoformat()
    conn.execute(
        "DELETE FROM flagged_services WHERE week_start = ? AND week_end = ?",
        (week_start, week_end)
    )
    for item in flagged:
        conn.execute("""
            INSERT INTO flagged_services
            (week_start, week_end, description, categories, chosen_category, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            week_start, week_end,
            item["description"],
            json.dumps(item["categories"]),
            item["chosen"],
            now,
        ))
    return len(flagged)


def get_flagged_services(week_start):
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM flagged_services WHERE week_start = ? ORDER BY description",
            (week_start,)
        ).fetchall()
    result = []
    for r in rows:
        item = dict(r)
        item["categories"] = json.loads(item["categories"])
        result.append(item)
    return result


# ── Upload log ──────────────────────────────────────────────────────────────

def record_upload(conn, filename, file_type, status, week=None, rows_read=0, records=0, error=""):
    cur = conn.execute("""
        INSERT INTO file_uploads
        (filename, file_type, week_start, week_end, rows_read, records, status, error, uploaded_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        filename,
        file_type,
        week.start.isoformat() if week else None,
        week.end.isoformat() if week else None,
        rows_read,
        records,
        status,
        error or "",
        datetime.now().isoformat(),
    ))
    return cur.lastrowid


def get_recent_uploads(limit=20):
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM file_uploads ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
    return [dict(r) for r in rows]


# ── Service mapping ─────────────────────────────────────────────────────────

def upsert_service_mapping(conn, entries):
    """Insert or update mapping entries by normalized name and type; returns (inserted, updated)."""
    now = datetime.now().isoformat()
    inserted = updated = 0
    for e in entries:
        name, service_type = e.key
        exists = conn.execute("""
            SELECT 1 FROM service_mapping
            WHERE normalized_service_name = ? AND normalized_service_type = ?
        """, (name, service_type)).fetchone()
        conn.execute("""
            INSERT INTO service_mapping
            (service_name, service_type, normalized_service_name, normalized_service_type,
             default_charge, revenue_perf_bin, service_volume_bin, customer_bin, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (normalized_service_name, normalized_service_type) DO UPDATE SET
                service_name = excluded.service_name,
                service_type = excluded.service_type,
                default_charge = excluded.default_charge,
                revenue_perf_bin = excluded.revenue_perf_bin,
                service_volume_bin = excluded.service_volume_bin,
                customer_bin = excluded.customer_bin,
                updated_at = excluded.updated_at
        """, (
            e.service_name, e.service_type, name, service_type,
            float(e.default_charge) if e.default_charge is not None else None,
            e.bins.revenue_perf, e.bins.service_volume, e.bins.customer, now,
        ))
        if exists:
            updated += 1
        else:
            inserted += 1
    return inserted, updated


def record_mapping_load(conn, source_file, row_count, digest):
    conn.execute(
        "INSERT INTO mapping_loads (source_file, row_count, mapping_hash, loaded_at) VALUES (?, ?, ?, ?)",
        (source_file, row_count, digest, datetime.now().isoformat())
    )


def get_service_mapping():
    with get_db() as conn:
        rows = conn.execute("""
            SELECT service_name, service_type, default_charge,
                   revenue_perf_bin, service_volume_bin, customer_bin
            FROM service_mapping ORDER BY normalized_service_name, normalized_service_type
        """).fetchall()
    return [dict(r) for r in rows]


def replace_unmapped_services(conn, week_start, unmapped):
    now = datetime.now().isoformat()
    conn.execute("DELETE FROM unmapped_services WHERE week_start = ?", (week_start,))
    for item in unmapped:
        conn.execute("""
            INSERT INTO unmapped_services
            (week_start, normalized_service_name, normalized_service_type,
             description, occurrences, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            week_start,
            item["service_name"],
            item["service_type"],
            item["description"],
            item["occurrences"],
            now,
        ))
    return len(unmapped)


def get_unmapped_services(week_start=None):
    with get_db() as conn:
        if week_start:
            rows = conn.execute("""
                SELECT * FROM unmapped_services WHERE week_start = ?
                ORDER BY occurrences DESC, normalized_service_name
            """, (week_start,)).fetchall()
        else:
            rows = conn.execute("""
                SELECT * FROM unmapped_services
                ORDER BY week_start DESC, occurrences DESC, normalized_service_name
            """).fetchall()
    return [dict(r) for r in rows]
