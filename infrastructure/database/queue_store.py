"""
Durable store-and-forward queue backed by SQLite.

Two append-only tables live in the same file:

- ``mqtt_queue``: every outbound message, flipped to ``sent`` once the broker
  acknowledges it and pruned after a retention window.
- ``sensor_readings``: audit log of every raw sample.

One controller process owns the file; statement-level atomicity is all the
locking it needs.
"""

import logging
import shutil
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from edgectl.domain.exceptions import StorageError
from edgectl.domain.readings import QueueEntry, SensorReading
from edgectl.utils.time import iso_now, sqlite_timestamp, utc_now

logger = logging.getLogger(__name__)

DEFAULT_DRAIN_LIMIT = 100

_SCHEMA = """
CREATE TABLE IF NOT EXISTS mqtt_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    topic TEXT NOT NULL,
    payload TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    sent INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sensor_readings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sensor_id TEXT NOT NULL,
    value REAL NOT NULL,
    timestamp TEXT NOT NULL,
    controller_id TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_mqtt_queue_sent
    ON mqtt_queue(sent, id);
CREATE INDEX IF NOT EXISTS idx_mqtt_queue_created
    ON mqtt_queue(created_at);
CREATE INDEX IF NOT EXISTS idx_sensor_readings_created
    ON sensor_readings(created_at);
"""


class PersistentQueue:
    """SQLite-backed outbound queue and sensor audit log."""

    def __init__(self, database_path: str, clock: Callable[[], datetime] = utc_now) -> None:
        self._database_path = database_path
        self._clock = clock
        self._conn: Optional[sqlite3.Connection] = None

        if database_path != ":memory:":
            db_path = Path(database_path)
            if not db_path.parent.exists():
                db_path.parent.mkdir(parents=True, exist_ok=True)
                logger.info("Created queue database directory: %s", db_path.parent)

    # --- Lifecycle ------------------------------------------------------------
    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def initialize(self) -> None:
        """Open the database and create the schema. Raises ``StorageError``."""
        logger.info("Initializing queue database: %s", self._database_path)
        try:
            try:
                self._conn = self._open_connection()
            except sqlite3.DatabaseError as exc:
                if not self._is_corruption_error(exc):
                    raise
                logger.error("Queue database appears corrupt (%s). Recreating a fresh database.", exc)
                self._quarantine_corrupt_db()
                self._conn = self._open_connection()
            with self.connection() as db:
                db.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            self._conn = None
            raise StorageError(
                f"Failed to initialize queue database: {exc}",
                detail={"database_path": self._database_path},
            ) from exc
        logger.info("Queue database initialized")

    def _open_connection(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._database_path, check_same_thread=False)
        try:
            connection.row_factory = sqlite3.Row
            self._configure_connection(connection)
            # Touch the schema so a corrupt file fails here, not mid-run
            connection.execute("SELECT name FROM sqlite_master LIMIT 1").fetchall()
            return connection
        except Exception:
            connection.close()
            raise

    def _configure_connection(self, connection: sqlite3.Connection) -> None:
        """WAL keeps appends cheap; FULL sync so an acknowledged row survives power loss."""
        connection.execute("PRAGMA journal_mode=WAL")
        connection.execute("PRAGMA synchronous=FULL")
        connection.execute("PRAGMA temp_store=MEMORY")
        connection.commit()

    def _is_corruption_error(self, exc: sqlite3.Error) -> bool:
        message = str(exc).lower()
        return (
            "database disk image is malformed" in message
            or "file is not a database" in message
            or "file is encrypted or is not a database" in message
            or "malformed" in message
        )

    def _quarantine_corrupt_db(self) -> Optional[Path]:
        db_path = Path(self._database_path)
        if not db_path.exists():
            return None

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        quarantine_dir = db_path.parent / "corrupt"
        quarantine_dir.mkdir(parents=True, exist_ok=True)

        suffix = db_path.suffix or ".db"
        quarantined = quarantine_dir / f"{db_path.stem}_corrupt_{timestamp}{suffix}"
        try:
            shutil.move(str(db_path), str(quarantined))
            for sidecar_suffix in ("-wal", "-shm"):
                sidecar = Path(f"{db_path}{sidecar_suffix}")
                if sidecar.exists():
                    shutil.move(str(sidecar), str(quarantine_dir / f"{sidecar.name}_{timestamp}"))
            logger.warning("Quarantined corrupt queue database to %s", quarantined)
            return quarantined
        except OSError as exc:
            logger.error("Failed to quarantine corrupt queue database %s: %s", db_path, exc)
            return None

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        if self._conn is None:
            raise StorageError("Queue database is not initialized")
        conn = self._conn
        try:
            yield conn
        except Exception:
            conn.rollback()
            raise
        else:
            conn.commit()

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            except sqlite3.Error as exc:
                logger.error("Error closing queue database: %s", exc)
            finally:
                self._conn = None
            logger.info("Queue database closed")

    # --- Outbound queue -------------------------------------------------------
    def enqueue(self, topic: str, payload: str) -> Optional[int]:
        """
        Durably append an outbound message.

        Returns the new entry id, or ``None`` when the write failed. Failures
        are logged and never raised: a storage problem must not stall sampling.
        """
        try:
            with self.connection() as db:
                cursor = db.execute(
                    "INSERT INTO mqtt_queue (topic, payload, timestamp, created_at) VALUES (?, ?, ?, ?)",
                    (topic, payload, iso_now(), sqlite_timestamp(self._clock())),
                )
                return cursor.lastrowid
        except (sqlite3.Error, StorageError) as exc:
            logger.error("Failed to enqueue message for %s: %s", topic, exc)
            return None

    def drain(self, limit: int = DEFAULT_DRAIN_LIMIT, *, after_id: int = 0) -> list[QueueEntry]:
        """
        Oldest unsent entries in insertion order, at most ``limit``.

        ``after_id`` pages past entries the caller has already seen.
        """
        if limit <= 0:
            return []
        try:
            with self.connection() as db:
                rows = db.execute(
                    "SELECT id, topic, payload, timestamp, sent FROM mqtt_queue "
                    "WHERE sent = 0 AND id > ? ORDER BY id LIMIT ?",
                    (after_id, limit),
                ).fetchall()
        except (sqlite3.Error, StorageError) as exc:
            logger.error("Failed to read queued messages: %s", exc)
            return []
        return [
            QueueEntry(
                id=row["id"],
                topic=row["topic"],
                payload=row["payload"],
                timestamp=row["timestamp"],
                sent=bool(row["sent"]),
            )
            for row in rows
        ]

    def mark_sent(self, entry_id: int) -> None:
        """Flag an entry as delivered. Repeated calls are no-ops."""
        try:
            with self.connection() as db:
                db.execute("UPDATE mqtt_queue SET sent = 1 WHERE id = ? AND sent = 0", (entry_id,))
        except (sqlite3.Error, StorageError) as exc:
            logger.error("Failed to mark message %s as sent: %s", entry_id, exc)

    def prune(self, retention: timedelta, now: Optional[datetime] = None) -> int:
        """Delete sent entries older than ``retention``. Unsent rows are never touched."""
        cutoff = sqlite_timestamp((now or self._clock()) - retention)
        try:
            with self.connection() as db:
                cursor = db.execute(
                    "DELETE FROM mqtt_queue WHERE sent = 1 AND created_at < ?",
                    (cutoff,),
                )
                deleted = cursor.rowcount
        except (sqlite3.Error, StorageError) as exc:
            logger.error("Failed to prune queue: %s", exc)
            return 0
        if deleted:
            logger.info("Pruned %s sent messages older than %s", deleted, cutoff)
        return deleted

    # --- Sensor audit log -----------------------------------------------------
    def append_reading(self, reading: SensorReading) -> None:
        try:
            with self.connection() as db:
                db.execute(
                    "INSERT INTO sensor_readings (sensor_id, value, timestamp, controller_id, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (
                        reading.sensor_id,
                        reading.value,
                        reading.timestamp,
                        reading.controller_id,
                        sqlite_timestamp(self._clock()),
                    ),
                )
        except (sqlite3.Error, StorageError) as exc:
            logger.error("Failed to append reading for sensor %s: %s", reading.sensor_id, exc)

    def prune_readings(self, retention: timedelta, now: Optional[datetime] = None) -> int:
        cutoff = sqlite_timestamp((now or self._clock()) - retention)
        try:
            with self.connection() as db:
                deleted = db.execute("DELETE FROM sensor_readings WHERE created_at < ?", (cutoff,)).rowcount
        except (sqlite3.Error, StorageError) as exc:
            logger.error("Failed to prune sensor audit log: %s", exc)
            return 0
        if deleted:
            logger.info("Pruned %s audit readings older than %s", deleted, cutoff)
        return deleted

    def stats(self) -> dict[str, Any]:
        """Row counts for diagnostics. Raises ``StorageError`` on failure."""
        try:
            with self.connection() as db:
                pending = db.execute("SELECT COUNT(*) FROM mqtt_queue WHERE sent = 0").fetchone()[0]
                sent = db.execute("SELECT COUNT(*) FROM mqtt_queue WHERE sent = 1").fetchone()[0]
                oldest = db.execute("SELECT MIN(created_at) FROM mqtt_queue WHERE sent = 0").fetchone()[0]
                readings = db.execute("SELECT COUNT(*) FROM sensor_readings").fetchone()[0]
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to read queue statistics: {exc}") from exc
        return {
            "pending": pending,
            "sent": sent,
            "oldest_pending": oldest,
            "audit_readings": readings,
        }
