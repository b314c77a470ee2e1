"""Batch ingestion orchestrator for transcript-to-embedding processing."""

import asyncio

from src.utils.logging import get_logger

from .config import IngestionConfig, get_config, validate_runtime_config
from .embedding_service import EmbeddingService
from .enrichment_service import EnrichmentService
from .errors import IntegrityFailureError, StorageError
from .schemas import (
    PipelineResult,
    SkipReason,
    Transcript,
    VideoOutcome,
    VideoRecord,
    VideoSegment,
    VideoStage,
)
from .segment_builder import SegmentBuilder
from .storage_service import StorageService
from .youtube_service import YouTubeService

logger = get_logger(__name__)


class VideoIngestionPipeline:
    """Orchestrates discovery, enrichment, segmentation, embedding and storage.

    Videos are processed one at a time. Successfully processed videos
    accumulate into a batch that is committed in one storage transaction as
    soon as it is full or the video list is exhausted. Failures while
    processing a video skip that video only. Storage failures abort the run
    without leaving a partially committed batch behind.
    """

    def __init__(self, config: IngestionConfig | None = None):
        """Initialize pipeline with all required services.

        Args:
            config: Configuration object. If None, loads from environment.
        """
        self.config = config or get_config()
        self.youtube_service = YouTubeService(self.config)
        self.enrichment_service = EnrichmentService()
        self.segment_builder = SegmentBuilder()
        self.embedding_service = EmbeddingService(self.config)

        logger.info(
            "pipeline_initialized",
            source=self.config.source,
            batch_size=self.config.batch_size,
            output_path=self.config.output_path,
        )

    async def process_source(self, source: str | None = None) -> PipelineResult:
        """Ingest every video of a channel or playlist into the store.

        This is the main entry point. It discovers videos, processes them in
        batches, commits each non-empty batch, then optimizes and verifies the
        store once.

        Args:
            source: Channel or playlist selector; defaults to ``config.source``.

        Returns:
            PipelineResult with counts, skip reasons and final store report.

        Raises:
            ConfigurationError: If the run cannot start.
            ProcessingFailureError: If discovery itself fails.
        """
        if source:
            self.config.source = source
        validate_runtime_config(self.config)

        logger.info(
            "pipeline_started",
            source=self.config.source,
            max_videos=self.config.max_videos,
        )

        result = PipelineResult()
        videos = await self.youtube_service.fetch_channel_or_playlist_videos(
            self.config.source, limit=self.config.max_videos or None
        )
        result.total_discovered = len(videos)
        logger.info("videos_fetched", count=len(videos))

        with StorageService(self.config) as storage:
            await self._run_batches(storage, videos, result)

        logger.info(
            "pipeline_completed",
            discovered=result.total_discovered,
            processed=result.processed,
            skipped=result.skipped,
            skipped_by_reason=result.skipped_by_reason,
            batches=result.batches_committed,
            aborted=result.aborted,
        )
        return result

    async def _run_batches(
        self,
        storage: StorageService,
        videos: list[VideoRecord],
        result: PipelineResult,
    ) -> None:
        """Process and commit all batches, then run the final optimization."""
        pending: list[VideoOutcome] = []
        try:
            existing: set[str] = set()
            if self.config.skip_existing and videos:
                existing = await storage.get_existing_video_ids([v.id for v in videos])

            storage.apply_profile("production")
            batch_number = 0
            for index, video in enumerate(videos, start=1):
                logger.info("video_progress", video_id=video.id, index=index, total=len(videos))
                if video.id in existing:
                    outcome = self._skip(
                        video.id, VideoStage.DISCOVERING, SkipReason.ALREADY_STORED
                    )
                else:
                    outcome = await self._process_video(video)

                if outcome.queued:
                    pending.append(outcome)
                elif outcome.skip_reason is not None:
                    result.record_skip(outcome.skip_reason)
                    if outcome.error:
                        result.errors.append(f"{outcome.video_id}: {outcome.error}")

                if len(pending) >= self.config.batch_size:
                    batch_number += 1
                    await self._commit(storage, batch_number, pending, result)
                    pending = []

            if pending:
                batch_number += 1
                await self._commit(storage, batch_number, pending, result)
                pending = []

            await storage.optimize_database()
            result.integrity = await storage.verify()
            if not result.integrity.ok:
                raise IntegrityFailureError(result.integrity.issues)
        except asyncio.CancelledError:
            # The in-flight batch was never handed to storage
            logger.warning(
                "batch_discarded",
                videos=len(pending),
                last_committed_video_id=result.last_committed_video_id,
            )
            raise
        except (StorageError, IntegrityFailureError) as e:
            logger.error(
                "pipeline_aborted",
                error_type=type(e).__name__,
                error=str(e),
                last_committed_video_id=result.last_committed_video_id,
            )
            result.aborted = True
            result.fatal_aborts += 1
            result.errors.append(f"fatal: {e}")
        finally:
            if not storage.closed:
                storage.apply_profile("safe")
                result.stats = await storage.get_stats()

    async def _commit(
        self,
        storage: StorageService,
        batch_number: int,
        outcomes: list[VideoOutcome],
        result: PipelineResult,
    ) -> None:
        """Commit one non-empty batch of fully processed videos.

        Raises:
            StorageError: If the commit fails (nothing from the batch is kept).
            IntegrityFailureError: If the post-commit quick check fails.
        """
        videos = [o.video for o in outcomes if o.video is not None]
        segments = [s for o in outcomes for s in o.segments]

        try:
            await storage.commit_batch(videos, segments)
        except StorageError:
            for video in videos:
                self._stage(video.id, VideoStage.FAILED, batch=batch_number)
            result.failed_video_ids.extend(v.id for v in videos)
            raise

        result.batches_committed += 1
        result.processed += len(videos)
        result.segments_stored += len(segments)
        result.degraded_segments += sum(1 for s in segments if s.embedding_degraded)
        result.last_committed_video_id = videos[-1].id
        logger.info(
            "batch_committed",
            batch=batch_number,
            videos=len(videos),
            segments=len(segments),
        )

        if self.config.verify_each_batch:
            report = await storage.verify(quick=True)
            if not report.ok:
                result.integrity = report
                raise IntegrityFailureError(report.issues)

    async def _process_video(self, video: VideoRecord) -> VideoOutcome:
        """Drive one video through every stage up to queued-for-commit.

        Every recoverable failure ends in the skipped state; nothing raised
        here escapes to the batch loop.

        Args:
            video: Discovered video record.

        Returns:
            VideoOutcome holding the enriched record and embedded segments,
            or the skip reason.
        """
        self._stage(video.id, VideoStage.DISCOVERING, title=video.title)
        self._stage(video.id, VideoStage.EXTRACTING_TRANSCRIPT)
        transcript, error = await self._fetch_transcript(video.id)
        if error is not None:
            return self._skip(
                video.id,
                VideoStage.EXTRACTING_TRANSCRIPT,
                SkipReason.TRANSCRIPT_FETCH_FAILED,
                error,
            )
        if transcript is None or not transcript.segments:
            return self._skip(
                video.id, VideoStage.EXTRACTING_TRANSCRIPT, SkipReason.NO_TRANSCRIPT
            )

        self._stage(video.id, VideoStage.ENRICHING)
        try:
            enriched = self.enrichment_service.enrich(video, transcript.text)
        except Exception as e:
            return self._skip(
                video.id, VideoStage.ENRICHING, SkipReason.ENRICHMENT_FAILED, e
            )

        self._stage(video.id, VideoStage.BUILDING_SEGMENTS)
        try:
            segments = self.segment_builder.build(video.id, transcript)
        except Exception as e:
            return self._skip(
                video.id,
                VideoStage.BUILDING_SEGMENTS,
                SkipReason.SEGMENT_BUILD_FAILED,
                e,
            )
        if not segments:
            return self._skip(
                video.id, VideoStage.BUILDING_SEGMENTS, SkipReason.NO_TRANSCRIPT
            )

        self._stage(video.id, VideoStage.EMBEDDING)
        try:
            segments = await self._embed_segments(segments)
        except Exception as e:
            return self._skip(
                video.id, VideoStage.EMBEDDING, SkipReason.EMBEDDING_FAILED, e
            )

        self._stage(video.id, VideoStage.QUEUED_FOR_COMMIT, segments=len(segments))
        return VideoOutcome(
            video_id=video.id,
            stage=VideoStage.QUEUED_FOR_COMMIT,
            video=enriched,
            segments=segments,
        )

    async def _fetch_transcript(
        self, video_id: str
    ) -> tuple[Transcript | None, Exception | None]:
        """Fetch a transcript, retrying raised errors up to ``max_retries`` times."""
        last_error: Exception | None = None
        for attempt in range(self.config.max_retries + 1):
            try:
                transcript = await self.youtube_service.extract_transcript(
                    video_id=video_id,
                    retry=(attempt > 0),
                )
                return transcript, None
            except Exception as e:
                last_error = e
                logger.warning(
                    "transcript_attempt_failed",
                    video_id=video_id,
                    attempt=attempt + 1,
                    error_type=type(e).__name__,
                    error=str(e),
                )
        return None, last_error

    async def _embed_segments(self, segments: list[VideoSegment]) -> list[VideoSegment]:
        """Attach embeddings to segments with one batched generator call."""
        vectors = await self.embedding_service.generate_batch([s.text for s in segments])
        if len(vectors) != len(segments):
            raise ValueError(
                f"Embedding count {len(vectors)} does not match segment count {len(segments)}"
            )
        return [
            segment.model_copy(
                update={
                    "embedding": vector,
                    "embedding_degraded": not self.embedding_service.validate(vector),
                }
            )
            for segment, vector in zip(segments, vectors, strict=True)
        ]

    def _stage(self, video_id: str, stage: VideoStage, **fields: object) -> None:
        logger.info("video_stage", video_id=video_id, stage=stage.value, **fields)

    def _skip(
        self,
        video_id: str,
        stage: VideoStage,
        reason: SkipReason,
        error: Exception | None = None,
    ) -> VideoOutcome:
        logger.warning(
            "video_skipped",
            video_id=video_id,
            stage=stage.value,
            reason=reason.value,
            error_type=type(error).__name__ if error else None,
            error=str(error) if error else None,
        )
        return VideoOutcome(
            video_id=video_id,
            stage=VideoStage.SKIPPED,
            skip_reason=reason,
            error=str(error) if error else None,
        )
