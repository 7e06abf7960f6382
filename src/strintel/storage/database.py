"""SQLite-backed market database.

Stores every entity of the pipeline:
- platforms and neighborhoods (seeded, read-only to the scrape pipeline)
- listings, keyed by (external_id, platform_id) and updated in place
- price snapshots, append-only
- scrape jobs, one audit row per (platform, neighborhood) attempt
- competitors, keyed by host_id
- metrics, append-only with query-side de-duplication

Timestamps are stored as UTC ISO-8601 strings. Every write that depends on
the current time accepts an explicit ``now`` so callers and tests control it.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Union
from zoneinfo import ZoneInfo

from ..models.listing import ScrapedListing
from ..models.market import (
    BoundingBox,
    Competitor,
    JobStatus,
    JobType,
    ListingRecord,
    Metric,
    Neighborhood,
    Platform,
    PriceSnapshot,
    ScrapeJob,
)

logger = logging.getLogger(__name__)

# Columns of a listing that a re-scrape refreshes
LISTING_MUTABLE_FIELDS = (
    "title",
    "url",
    "property_type",
    "host_type",
    "host_name",
    "host_id",
    "bedrooms",
    "bathrooms",
    "max_guests",
    "latitude",
    "longitude",
    "rating",
    "review_count",
    "photo_count",
    "amenities",
    "is_superhost",
    "response_rate",
    "instant_book",
)

COMPETITOR_SORT_COLUMNS = {
    "portfolio_size": "portfolio_size",
    "rating": "avg_rating",
    "price": "avg_nightly_rate",
    "reviews": "total_reviews",
}

SCHEMA = """
CREATE TABLE IF NOT EXISTS platforms (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    slug TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    base_url TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    scrape_config JSON NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS neighborhoods (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    slug TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    name_ar TEXT,
    city TEXT NOT NULL DEFAULT 'Riyadh',
    latitude REAL,
    longitude REAL,
    bounding_box JSON,
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS listings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id TEXT NOT NULL,
    platform_id INTEGER NOT NULL REFERENCES platforms(id),
    neighborhood_id INTEGER REFERENCES neighborhoods(id),
    title TEXT,
    url TEXT,
    property_type TEXT NOT NULL,
    host_type TEXT NOT NULL,
    host_name TEXT,
    host_id TEXT,
    bedrooms INTEGER,
    bathrooms REAL,
    max_guests INTEGER,
    latitude REAL,
    longitude REAL,
    rating REAL,
    review_count INTEGER NOT NULL DEFAULT 0,
    photo_count INTEGER NOT NULL DEFAULT 0,
    amenities JSON NOT NULL DEFAULT '[]',
    is_superhost INTEGER NOT NULL DEFAULT 0,
    response_rate INTEGER,
    instant_book INTEGER NOT NULL DEFAULT 0,
    first_seen TIMESTAMP NOT NULL,
    last_seen TIMESTAMP NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    UNIQUE (external_id, platform_id)
);

CREATE TABLE IF NOT EXISTS price_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    listing_id INTEGER NOT NULL REFERENCES listings(id),
    snapshot_date TIMESTAMP NOT NULL,
    nightly_rate REAL,
    weekly_rate REAL,
    monthly_rate REAL,
    cleaning_fee REAL,
    currency TEXT NOT NULL DEFAULT 'SAR',
    available_days INTEGER,
    blocked_days INTEGER,
    booked_days INTEGER,
    scrape_job_id INTEGER REFERENCES scrape_jobs(id)
);

CREATE TABLE IF NOT EXISTS scrape_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    platform_id INTEGER REFERENCES platforms(id),
    neighborhood_id INTEGER REFERENCES neighborhoods(id),
    status TEXT NOT NULL,
    job_type TEXT NOT NULL,
    listings_found INTEGER NOT NULL DEFAULT 0,
    listings_updated INTEGER NOT NULL DEFAULT 0,
    price_snapshots INTEGER NOT NULL DEFAULT 0,
    errors INTEGER NOT NULL DEFAULT 0,
    error_log TEXT,
    started_at TIMESTAMP,
    completed_at TIMESTAMP,
    duration_ms INTEGER,
    created_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS competitors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    host_id TEXT NOT NULL UNIQUE,
    host_name TEXT,
    platform_ids JSON NOT NULL DEFAULT '[]',
    portfolio_size INTEGER NOT NULL DEFAULT 0,
    avg_rating REAL NOT NULL DEFAULT 0,
    avg_review_count REAL NOT NULL DEFAULT 0,
    total_reviews INTEGER NOT NULL DEFAULT 0,
    avg_nightly_rate REAL NOT NULL DEFAULT 0,
    neighborhoods JSON NOT NULL DEFAULT '{}',
    property_types JSON NOT NULL DEFAULT '{}',
    is_superhost INTEGER NOT NULL DEFAULT 0,
    first_detected TIMESTAMP NOT NULL,
    last_updated TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    neighborhood_id INTEGER NOT NULL REFERENCES neighborhoods(id),
    property_type TEXT NOT NULL,
    metric_date TIMESTAMP NOT NULL,
    period TEXT NOT NULL DEFAULT 'daily',
    adr REAL NOT NULL DEFAULT 0,
    adr30 REAL NOT NULL DEFAULT 0,
    adr60 REAL NOT NULL DEFAULT 0,
    adr90 REAL NOT NULL DEFAULT 0,
    occupancy_rate REAL NOT NULL DEFAULT 0,
    revpar REAL NOT NULL DEFAULT 0,
    total_listings INTEGER NOT NULL DEFAULT 0,
    new_listings INTEGER NOT NULL DEFAULT 0,
    avg_rating REAL NOT NULL DEFAULT 0,
    median_price REAL NOT NULL DEFAULT 0,
    price_p25 REAL NOT NULL DEFAULT 0,
    price_p75 REAL NOT NULL DEFAULT 0,
    data_confidence TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_listings_neighborhood ON listings(neighborhood_id);
CREATE INDEX IF NOT EXISTS idx_listings_host ON listings(host_id);
CREATE INDEX IF NOT EXISTS idx_snapshots_listing ON price_snapshots(listing_id);
CREATE INDEX IF NOT EXISTS idx_snapshots_date ON price_snapshots(snapshot_date);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON scrape_jobs(status);
CREATE INDEX IF NOT EXISTS idx_metrics_slice ON metrics(neighborhood_id, property_type, metric_date);
"""


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as a fixed-width UTC ISO string, so text order is time order."""
    if value is None:
        return None
    return as_utc(value).astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class CellsBusyError(RuntimeError):
    """Raised when a claim finds pending or running jobs on requested cells.

    Attributes:
        cells: The busy (platform_id, neighborhood_id) pairs
    """

    def __init__(self, cells: list[tuple[int, int]]):
        self.cells = cells
        super().__init__(f"{len(cells)} cell(s) already have a pending or running job")


class MarketDatabase:
    """SQLite store shared by the orchestrator, aggregators and read queries.

    Example:
        db = MarketDatabase(Path("data/strintel.db"))
        airbnb = db.upsert_platform("airbnb", "Airbnb")
        job = db.create_job(airbnb.id, olaya.id)
        db.start_job(job.id)
    """

    def __init__(self, db_path: Union[Path, str], timezone: str = "Asia/Riyadh"):
        """Open (and create if needed) the database.

        Args:
            db_path: Path of the SQLite file; parent directories are created
            timezone: IANA timezone whose calendar days group metric rows
        """
        self.db_path = Path(db_path)
        self.zone = ZoneInfo(timezone)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Connection that commits on success and always closes."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    # ─── Platforms & neighborhoods ───

    def _row_to_platform(self, row: sqlite3.Row) -> Platform:
        return Platform(
            id=row["id"],
            slug=row["slug"],
            name=row["name"],
            base_url=row["base_url"],
            is_active=bool(row["is_active"]),
            scrape_config=json.loads(row["scrape_config"] or "{}"),
        )

    def upsert_platform(
        self,
        slug: str,
        name: str,
        base_url: Optional[str] = None,
        is_active: bool = True,
        scrape_config: Optional[dict[str, Any]] = None,
    ) -> Platform:
        """Insert a platform or update it by slug."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO platforms (slug, name, base_url, is_active, scrape_config)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(slug) DO UPDATE SET
                    name = excluded.name,
                    base_url = excluded.base_url,
                    is_active = excluded.is_active,
                    scrape_config = excluded.scrape_config
                """,
                (slug, name, base_url, int(is_active), json.dumps(scrape_config or {})),
            )
            row = conn.execute("SELECT * FROM platforms WHERE slug = ?", (slug,)).fetchone()
        return self._row_to_platform(row)

    def get_platform(self, slug: str) -> Optional[Platform]:
        """Platform by slug."""
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM platforms WHERE slug = ?", (slug,)).fetchone()
        return self._row_to_platform(row) if row else None

    def list_platforms(self, active_only: bool = True) -> list[Platform]:
        """Platforms ordered by id."""
        sql = "SELECT * FROM platforms"
        if active_only:
            sql += " WHERE is_active = 1"
        with self._connect() as conn:
            rows = conn.execute(sql + " ORDER BY id").fetchall()
        return [self._row_to_platform(r) for r in rows]

    def _row_to_neighborhood(self, row: sqlite3.Row) -> Neighborhood:
        box = json.loads(row["bounding_box"]) if row["bounding_box"] else None
        return Neighborhood(
            id=row["id"],
            slug=row["slug"],
            name=row["name"],
            name_ar=row["name_ar"],
            city=row["city"],
            latitude=row["latitude"],
            longitude=row["longitude"],
            bounding_box=BoundingBox(**box) if box else None,
            is_active=bool(row["is_active"]),
        )

    def upsert_neighborhood(
        self,
        slug: str,
        name: str,
        name_ar: Optional[str] = None,
        city: str = "Riyadh",
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        bounding_box: Optional[BoundingBox] = None,
        is_active: bool = True,
    ) -> Neighborhood:
        """Insert a neighborhood or update it by slug."""
        box = json.dumps(bounding_box.model_dump()) if bounding_box else None
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO neighborhoods
                (slug, name, name_ar, city, latitude, longitude, bounding_box, is_active)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(slug) DO UPDATE SET
                    name = excluded.name,
                    name_ar = excluded.name_ar,
                    city = excluded.city,
                    latitude = excluded.latitude,
                    longitude = excluded.longitude,
                    bounding_box = excluded.bounding_box,
                    is_active = excluded.is_active
                """,
                (slug, name, name_ar, city, latitude, longitude, box, int(is_active)),
            )
            row = conn.execute("SELECT * FROM neighborhoods WHERE slug = ?", (slug,)).fetchone()
        return self._row_to_neighborhood(row)

    def get_neighborhood(self, slug: str) -> Optional[Neighborhood]:
        """Neighborhood by slug."""
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM neighborhoods WHERE slug = ?", (slug,)).fetchone()
        return self._row_to_neighborhood(row) if row else None

    def list_neighborhoods(self, active_only: bool = True) -> list[Neighborhood]:
        """Neighborhoods ordered by id."""
        sql = "SELECT * FROM neighborhoods"
        if active_only:
            sql += " WHERE is_active = 1"
        with self._connect() as conn:
            rows = conn.execute(sql + " ORDER BY id").fetchall()
        return [self._row_to_neighborhood(r) for r in rows]

    # ─── Listings & snapshots ───

    def _row_to_listing(self, row: sqlite3.Row) -> ListingRecord:
        data = dict(row)
        data["amenities"] = json.loads(data["amenities"] or "[]")
        for flag in ("is_superhost", "instant_book", "is_active"):
            data[flag] = bool(data[flag])
        data["first_seen"] = _parse_ts(data["first_seen"])
        data["last_seen"] = _parse_ts(data["last_seen"])
        return ListingRecord(**data)

    def upsert_listing(
        self,
        listing: ScrapedListing,
        platform_id: int,
        neighborhood_id: Optional[int],
        now: Optional[datetime] = None,
    ) -> tuple[int, bool]:
        """Insert or refresh a listing keyed by (external_id, platform_id).

        An existing row gets its mutable fields and ``last_seen`` updated and
        is marked active again; ``first_seen`` and ``neighborhood_id`` keep
        the values from the first sighting.

        Returns:
            (listing id, True if the row was created)
        """
        seen_at = _ts(now or utcnow())
        values = {
            "title": listing.title,
            "url": listing.url,
            "property_type": listing.property_type.value,
            "host_type": listing.host_type.value,
            "host_name": listing.host_name,
            "host_id": listing.host_id,
            "bedrooms": listing.bedrooms,
            "bathrooms": listing.bathrooms,
            "max_guests": listing.max_guests,
            "latitude": listing.latitude,
            "longitude": listing.longitude,
            "rating": listing.rating,
            "review_count": listing.review_count,
            "photo_count": listing.photo_count,
            "amenities": json.dumps(listing.amenities),
            "is_superhost": int(listing.is_superhost),
            "response_rate": listing.response_rate,
            "instant_book": int(listing.instant_book),
        }
        columns = ["external_id", "platform_id", "neighborhood_id", *LISTING_MUTABLE_FIELDS,
                   "first_seen", "last_seen", "is_active"]
        params = [listing.external_id, platform_id, neighborhood_id,
                  *(values[f] for f in LISTING_MUTABLE_FIELDS), seen_at, seen_at, 1]
        updates = ", ".join(f"{f} = excluded.{f}" for f in LISTING_MUTABLE_FIELDS)

        with self._connect() as conn:
            existing = conn.execute(
                "SELECT id FROM listings WHERE external_id = ? AND platform_id = ?",
                (listing.external_id, platform_id),
            ).fetchone()
            conn.execute(
                f"""
                INSERT INTO listings ({", ".join(columns)})
                VALUES ({", ".join("?" for _ in columns)})
                ON CONFLICT(external_id, platform_id) DO UPDATE SET
                    {updates},
                    last_seen = excluded.last_seen,
                    is_active = 1
                """,
                params,
            )
            row = conn.execute(
                "SELECT id FROM listings WHERE external_id = ? AND platform_id = ?",
                (listing.external_id, platform_id),
            ).fetchone()
        return row["id"], existing is None

    def get_listing(self, external_id: str, platform_id: int) -> Optional[ListingRecord]:
        """Listing by its natural key."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM listings WHERE external_id = ? AND platform_id = ?",
                (external_id, platform_id),
            ).fetchone()
        return self._row_to_listing(row) if row else None

    def list_listings(
        self,
        neighborhood_id: Optional[int] = None,
        property_type: Optional[str] = None,
        host_id: Optional[str] = None,
        active_only: bool = True,
    ) -> list[ListingRecord]:
        """Listings filtered by neighborhood, property type and host.

        ``property_type="all"`` (or None) does not filter by type.
        """
        sql = "SELECT * FROM listings WHERE 1=1"
        params: list[Any] = []
        if active_only:
            sql += " AND is_active = 1"
        if neighborhood_id is not None:
            sql += " AND neighborhood_id = ?"
            params.append(neighborhood_id)
        if property_type and property_type != "all":
            sql += " AND property_type = ?"
            params.append(property_type)
        if host_id is not None:
            sql += " AND host_id = ?"
            params.append(host_id)
        with self._connect() as conn:
            rows = conn.execute(sql + " ORDER BY id", params).fetchall()
        return [self._row_to_listing(r) for r in rows]

    def list_hosted_listings(self) -> list[ListingRecord]:
        """Active listings that carry a non-empty host id."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM listings
                WHERE is_active = 1 AND host_id IS NOT NULL AND host_id != ''
                ORDER BY id
                """
            ).fetchall()
        return [self._row_to_listing(r) for r in rows]

    def insert_price_snapshot(
        self,
        listing_id: int,
        listing: ScrapedListing,
        job_id: Optional[int],
        now: Optional[datetime] = None,
    ) -> int:
        """Append a price/availability reading. Returns the snapshot id."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO price_snapshots
                (listing_id, snapshot_date, nightly_rate, weekly_rate, monthly_rate,
                 cleaning_fee, currency, available_days, blocked_days, booked_days,
                 scrape_job_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    listing_id,
                    _ts(now or utcnow()),
                    listing.nightly_rate,
                    listing.weekly_rate,
                    listing.monthly_rate,
                    listing.cleaning_fee,
                    listing.currency,
                    listing.available_days,
                    listing.blocked_days,
                    listing.booked_days,
                    job_id,
                ),
            )
            return cursor.lastrowid

    def _row_to_snapshot(self, row: sqlite3.Row) -> PriceSnapshot:
        data = dict(row)
        data["snapshot_date"] = _parse_ts(data["snapshot_date"])
        return PriceSnapshot(**data)

    def list_snapshots(
        self,
        listing_id: Optional[int] = None,
        job_id: Optional[int] = None,
    ) -> list[PriceSnapshot]:
        """Snapshots for a listing and/or job, oldest first."""
        sql = "SELECT * FROM price_snapshots WHERE 1=1"
        params: list[Any] = []
        if listing_id is not None:
            sql += " AND listing_id = ?"
            params.append(listing_id)
        if job_id is not None:
            sql += " AND scrape_job_id = ?"
            params.append(job_id)
        with self._connect() as conn:
            rows = conn.execute(sql + " ORDER BY id", params).fetchall()
        return [self._row_to_snapshot(r) for r in rows]

    def slice_snapshots(
        self,
        neighborhood_id: int,
        property_type: str,
        since: datetime,
    ) -> list[PriceSnapshot]:
        """Snapshots of active listings in one market slice taken at or after ``since``."""
        sql = """
            SELECT s.* FROM price_snapshots s
            JOIN listings l ON l.id = s.listing_id
            WHERE l.neighborhood_id = ? AND l.is_active = 1 AND s.snapshot_date >= ?
        """
        params: list[Any] = [neighborhood_id, _ts(since)]
        if property_type != "all":
            sql += " AND l.property_type = ?"
            params.append(property_type)
        with self._connect() as conn:
            rows = conn.execute(sql + " ORDER BY s.id", params).fetchall()
        return [self._row_to_snapshot(r) for r in rows]

    def average_nightly_rate(self, listing_ids: list[int], since: datetime) -> float:
        """Mean positive nightly rate of the given listings' snapshots since a date."""
        if not listing_ids:
            return 0.0
        placeholders = ", ".join("?" for _ in listing_ids)
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT AVG(nightly_rate) AS avg_rate FROM price_snapshots
                WHERE listing_id IN ({placeholders})
                  AND snapshot_date >= ?
                  AND nightly_rate > 0
                """,
                [*listing_ids, _ts(since)],
            ).fetchone()
        return float(row["avg_rate"] or 0.0)

    # ─── Scrape jobs ───

    def _row_to_job(self, row: sqlite3.Row) -> ScrapeJob:
        data = dict(row)
        for key in ("started_at", "completed_at", "created_at"):
            data[key] = _parse_ts(data[key])
        data["status"] = JobStatus(data["status"])
        data["job_type"] = JobType(data["job_type"])
        return ScrapeJob(**data)

    def create_job(
        self,
        platform_id: Optional[int],
        neighborhood_id: Optional[int],
        job_type: JobType = JobType.FULL_SCAN,
        now: Optional[datetime] = None,
    ) -> ScrapeJob:
        """Create a pending job."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO scrape_jobs (platform_id, neighborhood_id, status, job_type, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (platform_id, neighborhood_id, JobStatus.PENDING.value, job_type.value,
                 _ts(now or utcnow())),
            )
            job_id = cursor.lastrowid
        return self.get_job(job_id)

    def claim_cells(
        self,
        cells: Iterable[tuple[int, int]],
        job_type: JobType = JobType.FULL_SCAN,
        now: Optional[datetime] = None,
    ) -> dict[tuple[int, int], ScrapeJob]:
        """Create one pending job per cell unless another run holds any of them.

        The check and the inserts run in a single ``BEGIN IMMEDIATE``
        transaction, so two processes sharing the file cannot both claim
        the same (platform_id, neighborhood_id) pair.

        Returns:
            The new pending job of every cell

        Raises:
            CellsBusyError: If any cell has a pending or running job; nothing is created
        """
        cells = sorted(set(cells))
        created_at = _ts(now or utcnow())
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            rows = conn.execute(
                "SELECT DISTINCT platform_id, neighborhood_id FROM scrape_jobs WHERE status IN (?, ?)",
                (JobStatus.PENDING.value, JobStatus.RUNNING.value),
            ).fetchall()
            busy = {(r["platform_id"], r["neighborhood_id"]) for r in rows}.intersection(cells)
            if busy:
                raise CellsBusyError(sorted(busy))

            job_ids = {}
            for platform_id, neighborhood_id in cells:
                cursor = conn.execute(
                    """
                    INSERT INTO scrape_jobs (platform_id, neighborhood_id, status, job_type, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (platform_id, neighborhood_id, JobStatus.PENDING.value, job_type.value, created_at),
                )
                job_ids[(platform_id, neighborhood_id)] = cursor.lastrowid
        return {cell: self.get_job(job_id) for cell, job_id in job_ids.items()}

    def cancel_pending_jobs(
        self,
        job_ids: Iterable[int],
        message: str = "Run ended before the cell started",
        now: Optional[datetime] = None,
    ) -> int:
        """Cancel the given jobs that never left pending. Returns how many were cancelled."""
        job_ids = list(job_ids)
        if not job_ids:
            return 0
        placeholders = ", ".join("?" for _ in job_ids)
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE scrape_jobs
                SET status = ?, completed_at = ?, errors = errors + 1, error_log = ?
                WHERE status = ? AND id IN ({placeholders})
                """,
                (JobStatus.CANCELLED.value, _ts(now or utcnow()), message,
                 JobStatus.PENDING.value, *job_ids),
            )
            return cursor.rowcount

    def get_job(self, job_id: int) -> Optional[ScrapeJob]:
        """Job by id."""
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM scrape_jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def start_job(self, job_id: int, now: Optional[datetime] = None) -> None:
        """Move a pending job to running."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE scrape_jobs SET status = ?, started_at = ? WHERE id = ?",
                (JobStatus.RUNNING.value, _ts(now or utcnow()), job_id),
            )

    def _finish_job(
        self,
        conn: sqlite3.Connection,
        job_id: int,
        status: JobStatus,
        now: datetime,
        **fields: Any,
    ) -> None:
        row = conn.execute("SELECT started_at FROM scrape_jobs WHERE id = ?", (job_id,)).fetchone()
        started = _parse_ts(row["started_at"]) if row else None
        now = as_utc(now)
        duration_ms = max(0, int((now - started).total_seconds() * 1000)) if started else None
        assignments = ", ".join(f"{k} = ?" for k in fields)
        sql = "UPDATE scrape_jobs SET status = ?, completed_at = ?, duration_ms = ?"
        if assignments:
            sql += f", {assignments}"
        conn.execute(
            sql + " WHERE id = ?",
            (status.value, _ts(now), duration_ms, *fields.values(), job_id),
        )

    def complete_job(
        self,
        job_id: int,
        listings_found: int,
        listings_updated: int,
        price_snapshots: int,
        errors: Optional[list[str]] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Mark a job completed with its counters and joined error log."""
        errors = errors or []
        with self._connect() as conn:
            self._finish_job(
                conn,
                job_id,
                JobStatus.COMPLETED,
                now or utcnow(),
                listings_found=listings_found,
                listings_updated=listings_updated,
                price_snapshots=price_snapshots,
                errors=len(errors),
                error_log="\n".join(errors) if errors else None,
            )

    def fail_job(
        self,
        job_id: int,
        message: str,
        now: Optional[datetime] = None,
        status: JobStatus = JobStatus.FAILED,
    ) -> None:
        """Mark a job failed (or cancelled) with an error message."""
        with self._connect() as conn:
            self._finish_job(conn, job_id, status, now or utcnow(), errors=1, error_log=message)

    def cancel_job(self, job_id: int, message: str = "Cancelled", now: Optional[datetime] = None) -> None:
        """Mark a job cancelled."""
        self.fail_job(job_id, message, now=now, status=JobStatus.CANCELLED)

    def list_jobs(self, limit: int = 20, status: Optional[JobStatus] = None) -> list[ScrapeJob]:
        """Most recent jobs first."""
        sql = "SELECT * FROM scrape_jobs"
        params: list[Any] = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(status.value)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_job(r) for r in rows]

    def fail_stale_jobs(self, older_than: timedelta, now: Optional[datetime] = None) -> int:
        """Reclassify abandoned jobs as failed.

        A job is abandoned when it has been running since before
        ``now - older_than``, or was claimed (pending) before then and never
        started.

        Returns:
            Number of jobs swept
        """
        now = now or utcnow()
        cutoff = _ts(now - older_than)
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE scrape_jobs
                SET status = ?, completed_at = ?, errors = errors + 1,
                    error_log = COALESCE(error_log || char(10), '') || ?
                WHERE (status = ? AND started_at IS NOT NULL AND started_at < ?)
                   OR (status = ? AND created_at < ?)
                """,
                (
                    JobStatus.FAILED.value,
                    _ts(now),
                    "Stale job: never finished after the process stopped",
                    JobStatus.RUNNING.value,
                    cutoff,
                    JobStatus.PENDING.value,
                    cutoff,
                ),
            )
            swept = cursor.rowcount
        if swept:
            logger.warning(f"Marked {swept} stale job(s) as failed")
        return swept

    # ─── Competitors ───

    def _row_to_competitor(self, row: sqlite3.Row) -> Competitor:
        data = dict(row)
        data.pop("id", None)
        data["platform_ids"] = json.loads(data["platform_ids"] or "[]")
        data["neighborhoods"] = json.loads(data["neighborhoods"] or "{}")
        data["property_types"] = json.loads(data["property_types"] or "{}")
        data["is_superhost"] = bool(data["is_superhost"])
        data["first_detected"] = _parse_ts(data["first_detected"])
        data["last_updated"] = _parse_ts(data["last_updated"])
        return Competitor(**data)

    def upsert_competitor(self, competitor: Competitor, now: Optional[datetime] = None) -> Competitor:
        """Insert or refresh a competitor by host id; ``first_detected`` is set only on insert."""
        stamp = _ts(now or utcnow())
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO competitors
                (host_id, host_name, platform_ids, portfolio_size, avg_rating,
                 avg_review_count, total_reviews, avg_nightly_rate, neighborhoods,
                 property_types, is_superhost, first_detected, last_updated)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(host_id) DO UPDATE SET
                    host_name = excluded.host_name,
                    platform_ids = excluded.platform_ids,
                    portfolio_size = excluded.portfolio_size,
                    avg_rating = excluded.avg_rating,
                    avg_review_count = excluded.avg_review_count,
                    total_reviews = excluded.total_reviews,
                    avg_nightly_rate = excluded.avg_nightly_rate,
                    neighborhoods = excluded.neighborhoods,
                    property_types = excluded.property_types,
                    is_superhost = excluded.is_superhost,
                    last_updated = excluded.last_updated
                """,
                (
                    competitor.host_id,
                    competitor.host_name,
                    json.dumps(competitor.platform_ids),
                    competitor.portfolio_size,
                    competitor.avg_rating,
                    competitor.avg_review_count,
                    competitor.total_reviews,
                    competitor.avg_nightly_rate,
                    json.dumps(competitor.neighborhoods),
                    json.dumps(competitor.property_types),
                    int(competitor.is_superhost),
                    stamp,
                    stamp,
                ),
            )
            row = conn.execute(
                "SELECT * FROM competitors WHERE host_id = ?", (competitor.host_id,)
            ).fetchone()
        return self._row_to_competitor(row)

    def get_competitor(self, host_id: str) -> Optional[Competitor]:
        """Competitor by host id."""
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM competitors WHERE host_id = ?", (host_id,)).fetchone()
        return self._row_to_competitor(row) if row else None

    def list_competitors(self, sort_by: str = "portfolio_size") -> list[Competitor]:
        """Competitors sorted descending by portfolio_size, rating, price or reviews."""
        column = COMPETITOR_SORT_COLUMNS.get(sort_by)
        if column is None:
            raise ValueError(
                f"Unknown sort key '{sort_by}' (expected one of {sorted(COMPETITOR_SORT_COLUMNS)})"
            )
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM competitors ORDER BY {column} DESC, host_id"
            ).fetchall()
        return [self._row_to_competitor(r) for r in rows]

    # ─── Metrics ───

    def _row_to_metric(self, row: sqlite3.Row) -> Metric:
        data = dict(row)
        data["metric_date"] = _parse_ts(data["metric_date"])
        return Metric(**data)

    def insert_metric(self, metric: Metric) -> int:
        """Append a metric row. Returns its id."""
        data = metric.model_dump(mode="json", exclude={"id"})
        data["metric_date"] = _ts(metric.metric_date)
        columns = list(data)
        with self._connect() as conn:
            cursor = conn.execute(
                f"INSERT INTO metrics ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                [data[c] for c in columns],
            )
            return cursor.lastrowid

    def list_metrics(
        self,
        neighborhood_id: Optional[int] = None,
        property_type: Optional[str] = None,
    ) -> list[Metric]:
        """Every metric row (duplicates included), oldest first."""
        sql = "SELECT * FROM metrics WHERE 1=1"
        params: list[Any] = []
        if neighborhood_id is not None:
            sql += " AND neighborhood_id = ?"
            params.append(neighborhood_id)
        if property_type is not None:
            sql += " AND property_type = ?"
            params.append(property_type)
        with self._connect() as conn:
            rows = conn.execute(sql + " ORDER BY id", params).fetchall()
        return [self._row_to_metric(r) for r in rows]

    def latest_metrics(
        self,
        neighborhood_id: Optional[int] = None,
        property_type: Optional[str] = None,
    ) -> list[Metric]:
        """Metric rows de-duplicated per (neighborhood, property type, day, period).

        Several passes on the same day append several rows; only the most
        recently written one is returned for each slice and day. Days are
        calendar days in the database's timezone, not UTC.
        """
        latest: dict[tuple, Metric] = {}
        for metric in self.list_metrics(neighborhood_id, property_type):
            day = metric.metric_date.astimezone(self.zone).date()
            latest[(metric.neighborhood_id, metric.property_type, day, metric.period)] = metric
        return sorted(latest.values(), key=lambda m: (m.metric_date, m.neighborhood_id))

    def supply_growth(self) -> list[dict[str, Any]]:
        """Listing supply over time per neighborhood (the "all" slice)."""
        return [
            {
                "neighborhood_id": m.neighborhood_id,
                "metric_date": m.metric_date,
                "total_listings": m.total_listings,
                "new_listings": m.new_listings,
            }
            for m in self.latest_metrics(property_type="all")
        ]
