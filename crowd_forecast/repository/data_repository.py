"""Repository layer responsible for all database access."""

from __future__ import annotations

import json
import math
import random
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator, Optional, Sequence

from crowd_forecast.domain.errors import PersistenceError
from crowd_forecast.domain.models import ModelState, Observation, Prediction, Zone
from crowd_forecast.utils.config import Settings, get_settings
from crowd_forecast.utils.logger import get_logger


logger = get_logger(__name__)

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"

SYNTHETIC_ZONES: tuple[Zone, ...] = (
    Zone("B1", "Engineering Carpentry Shop", 120, "lab"),
    Zone("B2", "Engineering Workshop", 100, "lab"),
    Zone("B7", "Administrative Building", 50, "academic"),
    Zone("B8", "Canteen", 80, "cafeteria"),
    Zone("B9", "Lecture Room 10/11", 200, "lecture"),
    Zone("B10", "Engineering Library", 40, "library"),
    Zone("B14", "Faculty Canteen", 80, "cafeteria"),
    Zone("B16", "Professor E.O.E. Perera Theater", 60, "auditorium"),
    Zone("B17", "Electronic Lab", 90, "lab"),
    Zone("B34", "Department of Electrical Engineering", 120, "academic"),
)


def to_db_timestamp(moment: datetime) -> str:
    """Serialise as fixed-width UTC text so SQL string order is time order."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def load_zone_catalog(path: Path) -> list[Zone]:
    """Read a JSON list of ``{zone_id, name, capacity, zone_type}`` entries.

    ``id``/``building_id`` and ``type`` are accepted as aliases. Entries
    without an identifier are skipped.
    """
    with open(path, "r", encoding="utf-8") as handle:
        payload = json.load(handle)

    zones: list[Zone] = []
    for entry in payload:
        zone_id = entry.get("zone_id") or entry.get("id") or entry.get("building_id")
        if not zone_id:
            logger.warning("Skipping catalog entry without identifier: %s", entry)
            continue
        capacity = entry.get("capacity")
        zones.append(
            Zone(
                zone_id=str(zone_id),
                name=str(entry.get("name") or zone_id),
                capacity=int(capacity) if capacity else None,
                zone_type=entry.get("zone_type") or entry.get("type"),
            )
        )
    return zones


class DataRepository:
    """Encapsulates SQLite access so the forecasting core stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Cursor]:
        try:
            connection = sqlite3.connect(
                self._db_path,
                timeout=self._settings.database_timeout_seconds,
            )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Database unavailable: {exc}") from exc
        connection.row_factory = sqlite3.Row
        try:
            with connection:
                yield connection.cursor()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Database operation failed: {exc}") from exc
        finally:
            connection.close()

    def initialize_database(self) -> None:
        """Create all persistence artifacts before the loops start."""
        with self._session() as cursor:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS Zones (
                    zone_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    capacity INTEGER CHECK (capacity IS NULL OR capacity > 0),
                    zone_type TEXT,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                );
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS Observations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    zone_id TEXT NOT NULL,
                    count INTEGER NOT NULL CHECK (count >= 0),
                    observed_at TEXT NOT NULL,
                    UNIQUE (zone_id, observed_at)
                );
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS ModelStates (
                    zone_id TEXT PRIMARY KEY,
                    level REAL NOT NULL,
                    trend REAL NOT NULL,
                    alpha REAL NOT NULL,
                    beta REAL NOT NULL,
                    phi REAL NOT NULL DEFAULT 1.0,
                    data_points_processed INTEGER NOT NULL DEFAULT 0,
                    last_updated TEXT,
                    rmse REAL,
                    last_value REAL NOT NULL DEFAULT 0,
                    last_value_only INTEGER NOT NULL DEFAULT 0,
                    log_transformed INTEGER NOT NULL DEFAULT 0,
                    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
                );
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS Predictions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    zone_id TEXT NOT NULL,
                    zone_name TEXT,
                    horizon_minutes INTEGER NOT NULL CHECK (horizon_minutes > 0),
                    current_count INTEGER NOT NULL CHECK (current_count >= 0),
                    predicted_count INTEGER NOT NULL CHECK (predicted_count >= 0),
                    confidence_lower REAL,
                    confidence_upper REAL,
                    model_tag TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_observations_zone_time
                ON Observations(zone_id, observed_at);
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_predictions_zone_horizon_time
                ON Predictions(zone_id, horizon_minutes, created_at);
                """
            )
        logger.info("Database initialized at %s", self._db_path)

    def seed_zone_catalog(self, zones: Sequence[Zone]) -> int:
        """Insert catalog zones that are not known yet; returns rows added."""
        if not zones:
            return 0
        with self._session() as cursor:
            cursor.executemany(
                """
                INSERT OR IGNORE INTO Zones (zone_id, name, capacity, zone_type)
                VALUES (?, ?, ?, ?);
                """,
                [(zone.zone_id, zone.name, zone.capacity, zone.zone_type) for zone in zones],
            )
            return int(cursor.rowcount)

    def seed_synthetic_data(self) -> None:
        """Seed a deterministic catalog and occupancy history when empty."""
        random.seed(self._settings.synthetic_random_seed)
        with self._session() as cursor:
            cursor.execute("SELECT COUNT(*) AS count FROM Zones;")
            if int(cursor.fetchone()["count"]) > 0:
                logger.info("Synthetic data already present; skipping seed")
                return

        self.seed_zone_catalog(SYNTHETIC_ZONES)

        step = timedelta(minutes=self._settings.synthetic_sample_minutes)
        end = datetime.now(timezone.utc).replace(second=0, microsecond=0)
        start = end - timedelta(days=self._settings.synthetic_seed_days)
        observations: list[Observation] = []
        for zone in SYNTHETIC_ZONES:
            capacity = zone.capacity or self._settings.default_zone_capacity
            moment = start
            while moment <= end:
                hour = moment.hour + moment.minute / 60.0
                # One daytime peak centred on early afternoon.
                daily_shape = max(0.0, math.sin(math.pi * (hour - 7.0) / 12.0))
                noise = random.gauss(0.0, 0.05)
                share = min(1.0, max(0.0, 0.05 + 0.75 * daily_shape + noise))
                observations.append(
                    Observation(zone.zone_id, int(round(share * capacity)), moment)
                )
                moment += step

        inserted = self.save_observations(observations)
        logger.info("Synthetic seed completed with %s observations", inserted)

    def upsert_zone(self, zone: Zone) -> None:
        """Insert a zone or correct its name, capacity and type in place."""
        with self._session() as cursor:
            cursor.execute(
                """
                INSERT INTO Zones (zone_id, name, capacity, zone_type)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(zone_id) DO UPDATE SET
                    name = excluded.name,
                    capacity = excluded.capacity,
                    zone_type = excluded.zone_type;
                """,
                (zone.zone_id, zone.name, zone.capacity, zone.zone_type),
            )

    def get_zone(self, zone_id: str) -> Optional[Zone]:
        with self._session() as cursor:
            cursor.execute(
                "SELECT zone_id, name, capacity, zone_type FROM Zones WHERE zone_id = ?;",
                (zone_id,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return self._row_to_zone(row)

    def list_zones(self) -> list[Zone]:
        with self._session() as cursor:
            cursor.execute(
                "SELECT zone_id, name, capacity, zone_type FROM Zones ORDER BY zone_id ASC;"
            )
            return [self._row_to_zone(row) for row in cursor.fetchall()]

    @staticmethod
    def _row_to_zone(row: sqlite3.Row) -> Zone:
        return Zone(
            zone_id=str(row["zone_id"]),
            name=str(row["name"]),
            capacity=int(row["capacity"]) if row["capacity"] is not None else None,
            zone_type=str(row["zone_type"]) if row["zone_type"] is not None else None,
        )

    def save_observations(self, observations: Sequence[Observation]) -> int:
        """Append observations; duplicates on (zone, timestamp) are ignored."""
        if not observations:
            return 0
        with self._session() as cursor:
            before = cursor.connection.total_changes
            cursor.executemany(
                """
                INSERT OR IGNORE INTO Observations (zone_id, count, observed_at)
                VALUES (?, ?, ?);
                """,
                [
                    (item.zone_id, int(item.count), to_db_timestamp(item.observed_at))
                    for item in observations
                ],
            )
            return int(cursor.connection.total_changes - before)

    def list_observations(
        self,
        zone_id: str,
        *,
        since: Optional[datetime] = None,
        after: Optional[datetime] = None,
    ) -> list[Observation]:
        """Return a zone's observations in timestamp order.

        ``since`` is inclusive, ``after`` is exclusive.
        """
        clauses = ["zone_id = ?"]
        params: list[object] = [zone_id]
        if since is not None:
            clauses.append("observed_at >= ?")
            params.append(to_db_timestamp(since))
        if after is not None:
            clauses.append("observed_at > ?")
            params.append(to_db_timestamp(after))
        with self._session() as cursor:
            cursor.execute(
                f"""
                SELECT zone_id, count, observed_at
                FROM Observations
                WHERE {" AND ".join(clauses)}
                ORDER BY observed_at ASC;
                """,
                tuple(params),
            )
            return [
                Observation(
                    zone_id=str(row["zone_id"]),
                    count=int(row["count"]),
                    observed_at=from_db_timestamp(row["observed_at"]),
                )
                for row in cursor.fetchall()
            ]

    def list_active_zone_ids(self, since: datetime) -> list[str]:
        """Zones with at least one observation at or after ``since``."""
        with self._session() as cursor:
            cursor.execute(
                """
                SELECT DISTINCT zone_id
                FROM Observations
                WHERE observed_at >= ?
                ORDER BY zone_id ASC;
                """,
                (to_db_timestamp(since),),
            )
            return [str(row["zone_id"]) for row in cursor.fetchall()]

    def count_observations(self, zone_id: Optional[str] = None) -> int:
        with self._session() as cursor:
            if zone_id is None:
                cursor.execute("SELECT COUNT(*) AS count FROM Observations;")
            else:
                cursor.execute(
                    "SELECT COUNT(*) AS count FROM Observations WHERE zone_id = ?;",
                    (zone_id,),
                )
            return int(cursor.fetchone()["count"])

    def save_model_state(self, zone_id: str, state: ModelState) -> None:
        """Persist the latest snapshot; last write wins."""
        with self._session() as cursor:
            cursor.execute(
                """
                INSERT INTO ModelStates (
                    zone_id, level, trend, alpha, beta, phi,
                    data_points_processed, last_updated, rmse, last_value,
                    last_value_only, log_transformed, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(zone_id) DO UPDATE SET
                    level = excluded.level,
                    trend = excluded.trend,
                    alpha = excluded.alpha,
                    beta = excluded.beta,
                    phi = excluded.phi,
                    data_points_processed = excluded.data_points_processed,
                    last_updated = excluded.last_updated,
                    rmse = excluded.rmse,
                    last_value = excluded.last_value,
                    last_value_only = excluded.last_value_only,
                    log_transformed = excluded.log_transformed,
                    updated_at = CURRENT_TIMESTAMP;
                """,
                (
                    zone_id,
                    state.level,
                    state.trend,
                    state.alpha,
                    state.beta,
                    state.phi,
                    state.data_points_processed,
                    to_db_timestamp(state.last_updated) if state.last_updated else None,
                    state.rmse,
                    state.last_value,
                    int(state.last_value_only),
                    int(state.log_transformed),
                ),
            )

    def load_model_state(self, zone_id: str) -> Optional[ModelState]:
        with self._session() as cursor:
            cursor.execute("SELECT * FROM ModelStates WHERE zone_id = ?;", (zone_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            return ModelState(
                level=float(row["level"]),
                trend=float(row["trend"]),
                alpha=float(row["alpha"]),
                beta=float(row["beta"]),
                phi=float(row["phi"]),
                data_points_processed=int(row["data_points_processed"]),
                last_updated=from_db_timestamp(row["last_updated"]),
                rmse=float(row["rmse"]) if row["rmse"] is not None else None,
                last_value=float(row["last_value"]),
                last_value_only=bool(row["last_value_only"]),
                log_transformed=bool(row["log_transformed"]),
            )

    def save_prediction(self, prediction: Prediction) -> None:
        self.save_predictions([prediction])

    def save_predictions(self, predictions: Sequence[Prediction]) -> None:
        """Append forecast output for offline accuracy evaluation."""
        if not predictions:
            return
        with self._session() as cursor:
            cursor.executemany(
                """
                INSERT INTO Predictions (
                    zone_id, zone_name, horizon_minutes, current_count,
                    predicted_count, confidence_lower, confidence_upper,
                    model_tag, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                [
                    (
                        item.zone_id,
                        item.zone_name,
                        item.horizon_minutes,
                        item.current_count,
                        item.predicted_count,
                        item.confidence_lower,
                        item.confidence_upper,
                        item.model_tag,
                        to_db_timestamp(item.created_at),
                    )
                    for item in predictions
                ],
            )

    def list_latest_predictions(self, zone_id: Optional[str] = None) -> list[Prediction]:
        """Return the newest stored prediction per (zone, horizon)."""
        where = "WHERE zone_id = ?" if zone_id is not None else ""
        params: tuple[object, ...] = (zone_id,) if zone_id is not None else ()
        with self._session() as cursor:
            cursor.execute(
                f"""
                SELECT p.*
                FROM Predictions AS p
                INNER JOIN (
                    SELECT zone_id, horizon_minutes, MAX(id) AS max_id
                    FROM Predictions
                    {where}
                    GROUP BY zone_id, horizon_minutes
                ) AS latest
                    ON latest.max_id = p.id
                ORDER BY p.zone_id ASC, p.horizon_minutes ASC;
                """,
                params,
            )
            return [
                Prediction(
                    zone_id=str(row["zone_id"]),
                    zone_name=str(row["zone_name"] or row["zone_id"]),
                    horizon_minutes=int(row["horizon_minutes"]),
                    current_count=int(row["current_count"]),
                    predicted_count=int(row["predicted_count"]),
                    model_tag=str(row["model_tag"]),
                    created_at=from_db_timestamp(row["created_at"]),
                    confidence_lower=row["confidence_lower"],
                    confidence_upper=row["confidence_upper"],
                )
                for row in cursor.fetchall()
            ]

    def count_predictions(self) -> int:
        """Return persisted prediction count for diagnostics and tests."""
        with self._session() as cursor:
            cursor.execute("SELECT COUNT(*) AS count FROM Predictions;")
            return int(cursor.fetchone()["count"])

    def purge_older_than(self, days: int, now: Optional[datetime] = None) -> tuple[int, int]:
        """Delete observations and predictions older than ``days``."""
        cutoff = to_db_timestamp((now or datetime.now(timezone.utc)) - timedelta(days=days))
        with self._session() as cursor:
            cursor.execute("DELETE FROM Observations WHERE observed_at < ?;", (cutoff,))
            observations_deleted = int(cursor.rowcount)
            cursor.execute("DELETE FROM Predictions WHERE created_at < ?;", (cutoff,))
            predictions_deleted = int(cursor.rowcount)
        logger.info(
            "Retention purge completed | observations=%s | predictions=%s",
            observations_deleted,
            predictions_deleted,
        )
        return observations_deleted, predictions_deleted
