"""Unit tests for SQLite storage service."""

import sqlite3
from collections.abc import Iterator
from datetime import datetime
from unittest.mock import patch

import pytest

from src.video_ingestion.config import IngestionConfig
from src.video_ingestion.errors import StorageError
from src.video_ingestion.schemas import Level, MetadataSource, SessionType
from src.video_ingestion.storage_service import (
    StorageService,
    deserialize_embedding,
    serialize_embedding,
)

from .factories import make_segment, make_video


@pytest.mark.unit
class TestStorageService:
    """Test suite for StorageService class."""

    @pytest.fixture
    def storage(self, config: IngestionConfig) -> Iterator[StorageService]:
        """Open a file-backed store in the test's temporary directory."""
        service = StorageService(config)
        yield service
        service.close()

    async def _count(self, storage: StorageService) -> tuple[int, int]:
        stats = await storage.get_stats()
        return stats.video_count, stats.segment_count

    def test_initialization_creates_schema(self, storage: StorageService) -> None:
        """Test tables, metadata and the initial safe profile."""
        tables = {
            row[0]
            for row in storage.connection.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table'"
            )
        }
        assert {"videos", "video_segments", "videos_fts", "segments_fts"} <= tables

        stored_dim = storage.connection.execute(
            "SELECT value FROM store_metadata WHERE key = 'embedding_dimensions'"
        ).fetchone()[0]
        assert stored_dim == "4"
        assert storage.profile == "safe"

    def test_reopen_with_other_dimension_fails(self, config: IngestionConfig) -> None:
        """Test that a store never mixes embedding dimensions."""
        StorageService(config).close()
        config.embedding_dimensions = 8

        with pytest.raises(StorageError, match="4-dimensional"):
            StorageService(config)

    @pytest.mark.asyncio
    async def test_commit_batch_round_trip(self, storage: StorageService) -> None:
        """Test that committed rows read back with their fields intact."""
        video = make_video("v1").model_copy(
            update={
                "published_at": datetime(2024, 12, 2, 9, 30),
                "level": Level.ADVANCED,
                "session_type": SessionType.WORKSHOP,
                "services": ["S3", "Lambda"],
                "speakers": ["Jane Doe"],
                "metadata_source": MetadataSource.COMBINED,
                "metadata_confidence": 0.8,
            }
        )
        segments = [make_segment("v1", 1), make_segment("v1", 2, degraded=True)]

        await storage.commit_batch([video], segments)

        stored = await storage.get_video("v1")
        assert stored == video

        stored_segments = await storage.get_segments("v1")
        assert [s.id for s in stored_segments] == ["v1_seg_1", "v1_seg_2"]
        assert stored_segments[0].embedding == [0.5, 0.25, -0.5, 1.0]
        assert stored_segments[1].embedding_degraded is True

    @pytest.mark.asyncio
    async def test_get_missing_video(self, storage: StorageService) -> None:
        """Test lookup of an unknown id."""
        assert await storage.get_video("missing") is None
        assert await storage.get_segments("missing") == []

    @pytest.mark.asyncio
    async def test_commit_batch_is_idempotent(self, storage: StorageService) -> None:
        """Test that re-committing a batch leaves the same rows."""
        videos = [make_video("v1"), make_video("v2")]
        segments = [make_segment("v1", 1), make_segment("v1", 2), make_segment("v2", 1)]

        await storage.commit_batch(videos, segments)
        await storage.commit_batch(videos, segments)

        assert await self._count(storage) == (2, 3)

    @pytest.mark.asyncio
    async def test_commit_batch_replaces_stale_segments(
        self, storage: StorageService
    ) -> None:
        """Test that a re-processed video keeps only its new segments."""
        await storage.commit_batch(
            [make_video("v1")], [make_segment("v1", i) for i in (1, 2, 3)]
        )

        await storage.commit_batch([make_video("v1")], [make_segment("v1", 1)])

        assert [s.id for s in await storage.get_segments("v1")] == ["v1_seg_1"]

    @pytest.mark.asyncio
    async def test_commit_batch_failure_mid_commit(self, storage: StorageService) -> None:
        """Test that a failure while writing segments rolls back the whole batch."""
        await storage.commit_batch([make_video("v0")], [make_segment("v0", 1)])

        segments = [make_segment("v1", 1), make_segment("v2", 1)]
        first_row = storage._segment_row(segments[0])

        with patch.object(
            storage,
            "_segment_row",
            side_effect=[first_row, sqlite3.OperationalError("disk I/O error")],
        ):
            with pytest.raises(StorageError, match="disk I/O error") as exc_info:
                await storage.commit_batch([make_video("v1"), make_video("v2")], segments)

        assert exc_info.value.operation == "commit_batch"
        assert await storage.get_existing_video_ids(["v0", "v1", "v2"]) == {"v0"}
        assert await self._count(storage) == (1, 1)

    @pytest.mark.asyncio
    async def test_commit_batch_foreign_key_violation(
        self, storage: StorageService
    ) -> None:
        """Test that a segment of an unknown video sinks its batch."""
        with pytest.raises(StorageError, match="FOREIGN KEY"):
            await storage.commit_batch(
                [make_video("v1")],
                [make_segment("v1", 1), make_segment("ghost", 1)],
            )

        assert await self._count(storage) == (0, 0)

    @pytest.mark.asyncio
    async def test_commit_batch_rejects_wrong_dimension(
        self, storage: StorageService
    ) -> None:
        """Test that a mis-sized embedding is refused before anything is written."""
        with pytest.raises(StorageError, match="expected 4") as exc_info:
            await storage.commit_batch(
                [make_video("v1")],
                [make_segment("v1", 1), make_segment("v1", 2, embedding=[0.1, 0.2])],
            )

        assert exc_info.value.operation == "validate"
        assert await self._count(storage) == (0, 0)

    @pytest.mark.asyncio
    async def test_upsert_video_metadata_updates(self, storage: StorageService) -> None:
        """Test that upserting an existing id updates the row in place."""
        await storage.upsert_video_metadata([make_video("v1", title="Old title")])
        await storage.upsert_video_metadata([make_video("v1", title="New title")])

        stored = await storage.get_video("v1")
        assert stored is not None
        assert stored.title == "New title"
        assert await self._count(storage) == (1, 0)

    @pytest.mark.asyncio
    async def test_insert_segments_is_atomic(self, storage: StorageService) -> None:
        """Test that one bad segment leaves none of the call's segments."""
        await storage.upsert_video_metadata([make_video("v1")])

        with pytest.raises(StorageError):
            await storage.insert_segments(
                [make_segment("v1", 1), make_segment("unknown", 1)]
            )

        assert await storage.get_segments("v1") == []

    @pytest.mark.asyncio
    async def test_get_existing_video_ids(self, storage: StorageService) -> None:
        """Test filtering ids down to stored videos."""
        await storage.upsert_video_metadata([make_video("v1"), make_video("v3")])

        existing = await storage.get_existing_video_ids(["v1", "v2", "v3"])

        assert existing == {"v1", "v3"}
        assert await storage.get_existing_video_ids([]) == set()

    @pytest.mark.asyncio
    async def test_optimize_empty_store(self, storage: StorageService) -> None:
        """Test that optimizing an empty store is a clean no-op."""
        await storage.optimize_database()
        await storage.optimize_database()

        report = await storage.verify()
        assert report.ok, report.issues

    @pytest.mark.asyncio
    async def test_optimize_keeps_search_working(self, storage: StorageService) -> None:
        """Test full-text search and integrity after optimization."""
        await storage.commit_batch(
            [make_video("v1"), make_video("v2")],
            [make_segment("v1", 1), make_segment("v2", 1)],
        )

        await storage.optimize_database()

        matches = storage.connection.execute(
            "SELECT COUNT(*) FROM segments_fts WHERE segments_fts MATCH 'storage'"
        ).fetchone()[0]
        assert matches == 2
        report = await storage.verify()
        assert report.ok, report.issues
        assert report.fts_query_ms >= 0.0

    @pytest.mark.asyncio
    async def test_verify_quick(self, storage: StorageService) -> None:
        """Test the per-batch quick check."""
        await storage.commit_batch([make_video("v1")], [make_segment("v1", 1)])

        report = await storage.verify(quick=True)

        assert report.ok
        assert report.issues == []

    @pytest.mark.asyncio
    async def test_verify_detects_orphan_segments(self, storage: StorageService) -> None:
        """Test that segments without a video are reported."""
        storage.connection.execute("PRAGMA foreign_keys = OFF")
        storage.connection.execute(
            "INSERT INTO video_segments (id, video_id, start_time, end_time, text, embedding) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            ("x_seg_1", "x", 0.0, 1.0, "orphan", serialize_embedding([0.1] * 4)),
        )

        report = await storage.verify(quick=True)

        assert not report.ok
        assert "1 segments reference missing videos" in report.issues

    @pytest.mark.asyncio
    async def test_get_stats(self, storage: StorageService) -> None:
        """Test counts, degraded count and size."""
        await storage.commit_batch(
            [make_video("v1")],
            [make_segment("v1", 1), make_segment("v1", 2, degraded=True)],
        )

        stats = await storage.get_stats()

        assert stats.video_count == 1
        assert stats.segment_count == 2
        assert stats.degraded_segment_count == 1
        assert stats.size_bytes > 0

    def test_profiles(self, storage: StorageService) -> None:
        """Test switching between tuning profiles."""
        storage.apply_profile("production")
        assert storage.connection.execute("PRAGMA synchronous").fetchone()[0] == 1
        assert storage.connection.execute("PRAGMA cache_size").fetchone()[0] == -65536
        assert storage.profile == "production"

        storage.apply_profile("safe")
        assert storage.connection.execute("PRAGMA synchronous").fetchone()[0] == 2
        assert storage.profile == "safe"

        with pytest.raises(ValueError, match="Unknown storage profile"):
            storage.apply_profile("turbo")

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, config: IngestionConfig) -> None:
        """Test closing twice and using a closed store."""
        storage = StorageService(config)
        storage.close()
        storage.close()

        assert storage.closed
        with pytest.raises(StorageError, match="closed"):
            await storage.get_stats()

    def test_close_resets_journal_mode(self, config: IngestionConfig) -> None:
        """Test that the closed file no longer needs a WAL sidecar."""
        with StorageService(config):
            pass

        connection = sqlite3.connect(config.output_path)
        try:
            mode = connection.execute("PRAGMA journal_mode").fetchone()[0]
        finally:
            connection.close()
        assert mode == "delete"

    def test_context_manager_closes_on_error(self, config: IngestionConfig) -> None:
        """Test that the connection is released on error paths."""
        with pytest.raises(RuntimeError):
            with StorageService(config) as storage:
                raise RuntimeError("boom")

        assert storage.closed

    def test_in_memory_store(self, config: IngestionConfig) -> None:
        """Test the in-memory override used for throwaway stores."""
        with StorageService(config, db_path=":memory:") as storage:
            assert storage.db_path == ":memory:"

    def test_embedding_serialization(self) -> None:
        """Test the float32 blob layout."""
        blob = serialize_embedding([1.0, -2.5, 0.0, 0.125])

        assert len(blob) == 16
        assert deserialize_embedding(blob) == [1.0, -2.5, 0.0, 0.125]
