"""Storage service persisting videos and segments into a portable SQLite file."""

import json
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from types import TracebackType
from typing import Any

import numpy as np

from src.utils.logging import get_logger

from .config import IngestionConfig
from .errors import StorageError
from .schemas import (
    DatabaseStats,
    IntegrityReport,
    Level,
    MetadataSource,
    SessionType,
    VideoRecord,
    VideoSegment,
)

logger = get_logger(__name__)

SCHEMA_VERSION = "1"

# Embeddings are stored as little-endian float32 blobs
EMBEDDING_DTYPE = np.dtype("<f4")

SCHEMA = """
CREATE TABLE IF NOT EXISTS store_metadata (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS videos (
  pk INTEGER PRIMARY KEY,
  id TEXT NOT NULL UNIQUE,
  title TEXT NOT NULL,
  description TEXT NOT NULL DEFAULT '',
  channel_id TEXT NOT NULL DEFAULT '',
  channel_title TEXT NOT NULL DEFAULT '',
  published_at TEXT,
  duration INTEGER NOT NULL DEFAULT 0,
  thumbnail_url TEXT NOT NULL DEFAULT '',
  youtube_url TEXT NOT NULL,
  level TEXT NOT NULL DEFAULT 'Unknown',
  services TEXT NOT NULL DEFAULT '[]',
  topics TEXT NOT NULL DEFAULT '[]',
  industry TEXT NOT NULL DEFAULT '[]',
  session_type TEXT NOT NULL DEFAULT 'Unknown',
  speakers TEXT NOT NULL DEFAULT '[]',
  metadata_source TEXT NOT NULL DEFAULT 'none',
  metadata_confidence REAL NOT NULL DEFAULT 0.0,
  extracted_keywords TEXT NOT NULL DEFAULT '[]',
  created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
  updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_videos_published_at ON videos (published_at);
CREATE INDEX IF NOT EXISTS idx_videos_level ON videos (level);
CREATE INDEX IF NOT EXISTS idx_videos_session_type ON videos (session_type);

CREATE TABLE IF NOT EXISTS video_segments (
  pk INTEGER PRIMARY KEY,
  id TEXT NOT NULL UNIQUE,
  video_id TEXT NOT NULL REFERENCES videos (id) ON DELETE CASCADE,
  start_time REAL NOT NULL,
  end_time REAL NOT NULL,
  text TEXT NOT NULL,
  embedding BLOB NOT NULL,
  embedding_degraded INTEGER NOT NULL DEFAULT 0,
  confidence REAL,
  speaker TEXT
);

CREATE INDEX IF NOT EXISTS idx_segments_video_id ON video_segments (video_id);

CREATE VIRTUAL TABLE IF NOT EXISTS videos_fts USING fts5(
  title, description, services, topics, speakers, extracted_keywords,
  content='videos', content_rowid='pk'
);

CREATE TRIGGER IF NOT EXISTS videos_fts_insert AFTER INSERT ON videos BEGIN
  INSERT INTO videos_fts(rowid, title, description, services, topics, speakers, extracted_keywords)
  VALUES (new.pk, new.title, new.description, new.services, new.topics, new.speakers, new.extracted_keywords);
END;

CREATE TRIGGER IF NOT EXISTS videos_fts_delete AFTER DELETE ON videos BEGIN
  INSERT INTO videos_fts(videos_fts, rowid, title, description, services, topics, speakers, extracted_keywords)
  VALUES ('delete', old.pk, old.title, old.description, old.services, old.topics, old.speakers, old.extracted_keywords);
END;

CREATE TRIGGER IF NOT EXISTS videos_fts_update AFTER UPDATE ON videos BEGIN
  INSERT INTO videos_fts(videos_fts, rowid, title, description, services, topics, speakers, extracted_keywords)
  VALUES ('delete', old.pk, old.title, old.description, old.services, old.topics, old.speakers, old.extracted_keywords);
  INSERT INTO videos_fts(rowid, title, description, services, topics, speakers, extracted_keywords)
  VALUES (new.pk, new.title, new.description, new.services, new.topics, new.speakers, new.extracted_keywords);
END;

CREATE VIRTUAL TABLE IF NOT EXISTS segments_fts USING fts5(
  text, content='video_segments', content_rowid='pk'
);

CREATE TRIGGER IF NOT EXISTS segments_fts_insert AFTER INSERT ON video_segments BEGIN
  INSERT INTO segments_fts(rowid, text) VALUES (new.pk, new.text);
END;

CREATE TRIGGER IF NOT EXISTS segments_fts_delete AFTER DELETE ON video_segments BEGIN
  INSERT INTO segments_fts(segments_fts, rowid, text) VALUES ('delete', old.pk, old.text);
END;

CREATE TRIGGER IF NOT EXISTS segments_fts_update AFTER UPDATE ON video_segments BEGIN
  INSERT INTO segments_fts(segments_fts, rowid, text) VALUES ('delete', old.pk, old.text);
  INSERT INTO segments_fts(rowid, text) VALUES (new.pk, new.text);
END;
"""

PROFILES: dict[str, list[str]] = {
    "safe": [
        "PRAGMA journal_mode = WAL",
        "PRAGMA synchronous = FULL",
        "PRAGMA cache_size = -2000",
        "PRAGMA temp_store = DEFAULT",
        "PRAGMA mmap_size = 0",
    ],
    "production": [
        "PRAGMA journal_mode = WAL",
        "PRAGMA synchronous = NORMAL",
        "PRAGMA cache_size = -65536",  # 64 MiB
        "PRAGMA temp_store = MEMORY",
        "PRAGMA mmap_size = 268435456",  # 256 MiB
    ],
}

_UPSERT_VIDEO_SQL = """
INSERT INTO videos (
  id, title, description, channel_id, channel_title, published_at, duration,
  thumbnail_url, youtube_url, level, services, topics, industry, session_type,
  speakers, metadata_source, metadata_confidence, extracted_keywords
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (id) DO UPDATE SET
  title = excluded.title,
  description = excluded.description,
  channel_id = excluded.channel_id,
  channel_title = excluded.channel_title,
  published_at = excluded.published_at,
  duration = excluded.duration,
  thumbnail_url = excluded.thumbnail_url,
  youtube_url = excluded.youtube_url,
  level = excluded.level,
  services = excluded.services,
  topics = excluded.topics,
  industry = excluded.industry,
  session_type = excluded.session_type,
  speakers = excluded.speakers,
  metadata_source = excluded.metadata_source,
  metadata_confidence = excluded.metadata_confidence,
  extracted_keywords = excluded.extracted_keywords,
  updated_at = CURRENT_TIMESTAMP
"""

_INSERT_SEGMENT_SQL = """
INSERT INTO video_segments (
  id, video_id, start_time, end_time, text, embedding, embedding_degraded,
  confidence, speaker
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_FTS_PROBE_TERM = "cloud"


def serialize_embedding(embedding: Sequence[float]) -> bytes:
    return np.asarray(embedding, dtype=EMBEDDING_DTYPE).tobytes()


def deserialize_embedding(blob: bytes) -> list[float]:
    return [float(x) for x in np.frombuffer(blob, dtype=EMBEDDING_DTYPE)]


class StorageService:
    """Single owner of the SQLite connection for one pipeline run.

    Every write method is atomic for the records passed in one call. Use the
    service as a context manager so the connection is closed exactly once,
    including on error paths.
    """

    def __init__(self, config: IngestionConfig, db_path: str | None = None):
        """Open the store and make sure the schema exists.

        Args:
            config: Configuration with output path and embedding dimension.
            db_path: Overrides ``config.output_path`` (":memory:" for tests).

        Raises:
            StorageError: If the file cannot be opened or was built with a
                different embedding dimension.
        """
        self.config = config
        self.db_path = db_path or config.output_path
        self.dimensions = config.embedding_dimensions
        self.profile: str | None = None
        self._closed = False
        self._in_transaction = False

        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self.connection = sqlite3.connect(self.db_path, isolation_level=None)
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"Failed to open database {self.db_path}: {e}", "open") from e

        try:
            self.connection.row_factory = sqlite3.Row
            self.connection.execute("PRAGMA foreign_keys = ON")
            self.apply_profile("safe")
            self.connection.executescript(SCHEMA)
            self._check_store_metadata()
        except (sqlite3.Error, StorageError) as e:
            self.connection.close()
            self._closed = True
            if isinstance(e, StorageError):
                raise
            raise StorageError(f"Failed to initialize schema: {e}", "schema") from e

        logger.info(
            "storage_service_initialized",
            db_path=self.db_path,
            dimensions=self.dimensions,
        )

    def __enter__(self) -> "StorageService":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_store_metadata(self) -> None:
        expected = {
            "schema_version": SCHEMA_VERSION,
            "embedding_dimensions": str(self.dimensions),
        }
        rows = self.connection.execute("SELECT key, value FROM store_metadata").fetchall()
        stored = {row["key"]: row["value"] for row in rows}

        stored_dim = stored.get("embedding_dimensions")
        if stored_dim is not None and stored_dim != expected["embedding_dimensions"]:
            raise StorageError(
                f"Store was built with {stored_dim}-dimensional embeddings, "
                f"configured dimension is {self.dimensions}",
                "schema",
            )

        with self._transaction("store_metadata"):
            for key, value in {
                **expected,
                "embedding_model": self.config.embedding_model,
            }.items():
                self.connection.execute(
                    "INSERT INTO store_metadata (key, value) VALUES (?, ?) "
                    "ON CONFLICT (key) DO UPDATE SET value = excluded.value",
                    (key, value),
                )

    def apply_profile(self, name: str) -> None:
        """Switch connection tuning between the "safe" and "production" profiles.

        Raises:
            ValueError: If the profile name is unknown.
        """
        if name not in PROFILES:
            raise ValueError(f"Unknown storage profile: {name}")
        self._ensure_open()
        for pragma in PROFILES[name]:
            self.connection.execute(pragma)
        self.profile = name
        logger.info("storage_profile_applied", profile=name)

    def _ensure_open(self) -> None:
        if self._closed:
            raise StorageError("Storage connection is closed", "connection")

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[None]:
        """Run the block in one transaction, rolling back on any exception.

        Nested use joins the outer transaction.
        """
        if self._in_transaction:
            yield
            return

        self._ensure_open()
        self._in_transaction = True
        try:
            self.connection.execute("BEGIN IMMEDIATE")
            yield
            self.connection.execute("COMMIT")
        except BaseException as e:
            if self.connection.in_transaction:
                self.connection.execute("ROLLBACK")
            logger.warning(
                "transaction_rolled_back",
                operation=operation,
                error_type=type(e).__name__,
            )
            if isinstance(e, sqlite3.Error):
                raise StorageError(f"{operation} failed: {e}", operation) from e
            raise
        finally:
            self._in_transaction = False

    async def upsert_video_metadata(self, videos: Sequence[VideoRecord]) -> None:
        """Insert or update video rows atomically.

        Raises:
            StorageError: If any row fails; no row of the call is kept.
        """
        if not videos:
            return

        with self._transaction("upsert_video_metadata"):
            self.connection.executemany(
                _UPSERT_VIDEO_SQL, [self._video_row(video) for video in videos]
            )
        logger.info("videos_saved", count=len(videos))

    async def insert_segments(self, segments: Sequence[VideoSegment]) -> None:
        """Insert segment rows atomically, replacing rows with the same id.

        Raises:
            StorageError: If a segment has the wrong embedding size, references
                an unknown video, or a row fails; no row of the call is kept.
        """
        if not segments:
            return

        self._validate_embeddings(segments)
        with self._transaction("insert_segments"):
            self.connection.executemany(
                "DELETE FROM video_segments WHERE id = ?",
                [(segment.id,) for segment in segments],
            )
            self.connection.executemany(
                _INSERT_SEGMENT_SQL, [self._segment_row(segment) for segment in segments]
            )
        logger.info(
            "segments_saved",
            count=len(segments),
            video_id=segments[0].video_id,
        )

    async def commit_batch(
        self, videos: Sequence[VideoRecord], segments: Sequence[VideoSegment]
    ) -> None:
        """Commit one batch of videos and their segments in a single transaction.

        Segments previously stored for the batch's videos are replaced, so
        committing the same batch twice leaves the same rows.

        Raises:
            StorageError: If anything fails; nothing from the batch is visible.
        """
        if not videos and not segments:
            return

        self._validate_embeddings(segments)
        video_ids = {video.id for video in videos}
        with self._transaction("commit_batch"):
            self.connection.executemany(
                "DELETE FROM video_segments WHERE video_id = ?",
                [(video_id,) for video_id in video_ids],
            )
            await self.upsert_video_metadata(videos)
            await self.insert_segments(segments)

        logger.info(
            "batch_saved",
            videos=len(videos),
            segments=len(segments),
        )

    def _validate_embeddings(self, segments: Sequence[VideoSegment]) -> None:
        for segment in segments:
            if len(segment.embedding) != self.dimensions:
                raise StorageError(
                    f"Segment {segment.id} has {len(segment.embedding)}-dimensional "
                    f"embedding, expected {self.dimensions}",
                    "validate",
                )

    def _video_row(self, video: VideoRecord) -> tuple[Any, ...]:
        return (
            video.id,
            video.title,
            video.description,
            video.channel_id,
            video.channel_title,
            video.published_at.isoformat() if video.published_at else None,
            video.duration_seconds,
            video.thumbnail_url,
            video.url,
            video.level.value,
            json.dumps(video.services),
            json.dumps(video.topics),
            json.dumps(video.industry),
            video.session_type.value,
            json.dumps(video.speakers),
            video.metadata_source.value,
            video.metadata_confidence,
            json.dumps(video.extracted_keywords),
        )

    def _segment_row(self, segment: VideoSegment) -> tuple[Any, ...]:
        return (
            segment.id,
            segment.video_id,
            segment.start_time,
            segment.end_time,
            segment.text,
            serialize_embedding(segment.embedding),
            int(segment.embedding_degraded),
            segment.confidence,
            segment.speaker,
        )

    async def get_existing_video_ids(self, video_ids: Sequence[str]) -> set[str]:
        """Return the subset of ``video_ids`` already stored."""
        self._ensure_open()
        existing: set[str] = set()
        ids = list(video_ids)
        # Stay well below SQLite's host parameter limit
        for i in range(0, len(ids), 500):
            chunk = ids[i : i + 500]
            placeholders = ",".join("?" for _ in chunk)
            rows = self.connection.execute(
                f"SELECT id FROM videos WHERE id IN ({placeholders})", chunk
            ).fetchall()
            existing.update(row["id"] for row in rows)
        return existing

    async def get_video(self, video_id: str) -> VideoRecord | None:
        """Load one stored video row, or None."""
        self._ensure_open()
        row = self.connection.execute(
            "SELECT * FROM videos WHERE id = ?", (video_id,)
        ).fetchone()
        if row is None:
            return None
        return VideoRecord(
            id=row["id"],
            title=row["title"],
            url=row["youtube_url"],
            description=row["description"],
            channel_id=row["channel_id"],
            channel_title=row["channel_title"],
            published_at=(
                datetime.fromisoformat(row["published_at"]) if row["published_at"] else None
            ),
            duration_seconds=row["duration"],
            thumbnail_url=row["thumbnail_url"],
            level=Level(row["level"]),
            services=json.loads(row["services"]),
            topics=json.loads(row["topics"]),
            industry=json.loads(row["industry"]),
            session_type=SessionType(row["session_type"]),
            speakers=json.loads(row["speakers"]),
            metadata_source=MetadataSource(row["metadata_source"]),
            metadata_confidence=row["metadata_confidence"],
            extracted_keywords=json.loads(row["extracted_keywords"]),
        )

    async def get_segments(self, video_id: str) -> list[VideoSegment]:
        """Load a video's stored segments in playback order."""
        self._ensure_open()
        rows = self.connection.execute(
            "SELECT * FROM video_segments WHERE video_id = ? ORDER BY start_time, pk",
            (video_id,),
        ).fetchall()
        return [
            VideoSegment(
                id=row["id"],
                video_id=row["video_id"],
                start_time=row["start_time"],
                end_time=row["end_time"],
                text=row["text"],
                embedding=deserialize_embedding(row["embedding"]),
                embedding_degraded=bool(row["embedding_degraded"]),
                confidence=row["confidence"] if row["confidence"] is not None else 1.0,
                speaker=row["speaker"],
            )
            for row in rows
        ]

    async def optimize_database(self) -> None:
        """Rebuild full-text indexes, refresh statistics and reclaim space.

        Safe to run on an empty store and to run repeatedly.

        Raises:
            StorageError: If any optimization step fails.
        """
        self._ensure_open()
        logger.info("optimization_started")
        started = time.perf_counter()
        try:
            with self._transaction("rebuild_fts"):
                self.connection.execute("INSERT INTO videos_fts(videos_fts) VALUES ('rebuild')")
                self.connection.execute(
                    "INSERT INTO segments_fts(segments_fts) VALUES ('rebuild')"
                )
            self.connection.execute("ANALYZE")
            self.connection.execute("PRAGMA optimize")
            self.connection.execute("VACUUM")
        except sqlite3.Error as e:
            logger.exception("optimization_failed", error_type=type(e).__name__)
            raise StorageError(f"Failed to optimize database: {e}", "optimize") from e

        logger.info(
            "optimization_completed",
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )

    async def verify(self, quick: bool = False) -> IntegrityReport:
        """Check store integrity and time representative queries.

        Args:
            quick: Use ``quick_check`` and skip the full-text index check.

        Returns:
            IntegrityReport; ``ok`` is False when any issue was found.
        """
        self._ensure_open()
        issues: list[str] = []

        try:
            pragma = "quick_check" if quick else "integrity_check"
            results = [row[0] for row in self.connection.execute(f"PRAGMA {pragma}")]
            if results != ["ok"]:
                issues.append(f"{pragma}: {'; '.join(results)}")

            orphans = self.connection.execute(
                "SELECT COUNT(*) FROM video_segments s "
                "LEFT JOIN videos v ON v.id = s.video_id WHERE v.id IS NULL"
            ).fetchone()[0]
            if orphans:
                issues.append(f"{orphans} segments reference missing videos")

            bad_embeddings = self.connection.execute(
                "SELECT COUNT(*) FROM video_segments WHERE length(embedding) != ?",
                (self.dimensions * EMBEDDING_DTYPE.itemsize,),
            ).fetchone()[0]
            if bad_embeddings:
                issues.append(f"{bad_embeddings} segments have malformed embeddings")

            if not quick:
                for table in ("videos_fts", "segments_fts"):
                    try:
                        self.connection.execute(
                            f"INSERT INTO {table}({table}) VALUES ('integrity-check')"
                        )
                    except sqlite3.DatabaseError as e:
                        issues.append(f"{table}: {e}")
        except sqlite3.DatabaseError as e:
            issues.append(f"verification query failed: {e}")

        report = IntegrityReport(ok=not issues, issues=issues, **self._time_queries(issues))
        log = logger.info if report.ok else logger.error
        log("verification_completed", quick=quick, ok=report.ok, issues=issues)
        return report

    def _time_queries(self, issues: list[str]) -> dict[str, float]:
        probes = {
            "video_query_ms": ("SELECT COUNT(*) FROM videos", ()),
            "segment_query_ms": ("SELECT COUNT(*) FROM video_segments", ()),
            "fts_query_ms": (
                "SELECT COUNT(*) FROM segments_fts WHERE segments_fts MATCH ?",
                (_FTS_PROBE_TERM,),
            ),
        }
        timings: dict[str, float] = {}
        for name, (sql, params) in probes.items():
            started = time.perf_counter()
            try:
                self.connection.execute(sql, params).fetchone()
            except sqlite3.DatabaseError as e:
                issues.append(f"{name} probe failed: {e}")
            timings[name] = round((time.perf_counter() - started) * 1000, 3)
        return timings

    async def get_stats(self) -> DatabaseStats:
        """Row counts and on-disk size of the store."""
        self._ensure_open()
        conn = self.connection
        page_count = conn.execute("PRAGMA page_count").fetchone()[0]
        page_size = conn.execute("PRAGMA page_size").fetchone()[0]
        return DatabaseStats(
            video_count=conn.execute("SELECT COUNT(*) FROM videos").fetchone()[0],
            segment_count=conn.execute("SELECT COUNT(*) FROM video_segments").fetchone()[0],
            degraded_segment_count=conn.execute(
                "SELECT COUNT(*) FROM video_segments WHERE embedding_degraded = 1"
            ).fetchone()[0],
            size_bytes=page_count * page_size,
        )

    def close(self) -> None:
        """Close the connection. Later calls are no-ops.

        File-backed stores are switched back to rollback journaling first so
        the output is a single self-contained file.
        """
        if self._closed:
            return
        self._closed = True
        try:
            if self.db_path != ":memory:":
                self.connection.execute("PRAGMA journal_mode = DELETE")
        except sqlite3.Error as e:
            logger.warning("journal_mode_reset_failed", error=str(e))
        finally:
            self.connection.close()
            logger.info("storage_closed", db_path=self.db_path)
