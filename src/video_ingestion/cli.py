"""Command-line interface for running the video ingestion pipeline."""

import argparse
import asyncio
import sys

from src.utils.logging import configure_logging, get_logger

from .config import get_config, validate_runtime_config
from .errors import ConfigurationError, ProcessingFailureError, StorageError
from .pipeline import VideoIngestionPipeline
from .schemas import PipelineResult

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Video Ingestion Pipeline - Embed talk transcripts into a searchable store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Ingest a channel (using .env config for keys)
  python -m src.video_ingestion.cli UCxxxxxxxxxxxxx

  # Ingest the first 100 videos of a playlist into a custom file
  python -m src.video_ingestion.cli "https://www.youtube.com/playlist?list=PLxxxx" \\
      --output ./videos.db --max-videos 100

  # Re-process videos that are already stored
  python -m src.video_ingestion.cli UCxxxxxxxxxxxxx --refresh
        """,
    )
    parser.add_argument(
        "source",
        nargs="?",
        help="Channel id/handle/URL or playlist URL (default: YOUTUBE_SOURCE)",
    )
    parser.add_argument("--output", type=str, help="Output SQLite database path")
    parser.add_argument(
        "--max-videos",
        type=int,
        help="Maximum number of videos to process (0 for unlimited)",
    )
    parser.add_argument("--batch-size", type=int, help="Videos per storage commit")
    parser.add_argument(
        "--refresh",
        action="store_true",
        help="Re-process videos already present in the output database",
    )
    return parser


def print_summary(result: PipelineResult) -> None:
    print("\n" + "=" * 60)
    print("Pipeline Results")
    print("=" * 60)
    print(f"Total videos discovered: {result.total_discovered}")
    print(f"Successfully processed: {result.processed}")
    print(f"Skipped: {result.skipped}")
    for reason, count in sorted(result.skipped_by_reason.items()):
        print(f"  - {reason}: {count}")
    print(f"Segments stored: {result.segments_stored}")
    print(f"Segments with fallback embeddings: {result.degraded_segments}")
    print(f"Batches committed: {result.batches_committed}")
    print(f"Fatal aborts: {result.fatal_aborts}")

    if result.stats:
        print(f"Final store size: {result.stats.size_bytes / 1024 / 1024:.2f} MB")
        print(
            f"Stored rows: {result.stats.video_count} videos, "
            f"{result.stats.segment_count} segments"
        )
    if result.integrity:
        print(
            "Query timings: "
            f"videos {result.integrity.video_query_ms:.2f} ms, "
            f"segments {result.integrity.segment_query_ms:.2f} ms, "
            f"full-text {result.integrity.fts_query_ms:.2f} ms"
        )

    if result.aborted:
        print(f"\n❌ Run aborted. Resume after video: {result.last_committed_video_id}")
    if result.failed_video_ids:
        print(f"Not stored (failed batch): {', '.join(result.failed_video_ids)}")
    if result.errors:
        print("\nErrors encountered:")
        for error in result.errors:
            print(f"  ❌ {error}")
    else:
        print("\n✅ No errors encountered")
    print("=" * 60 + "\n")


async def main(argv: list[str] | None = None) -> int:
    """CLI entry point for the ingestion pipeline.

    Returns:
        Process exit code: 0 on completion, 1 on setup failure or abort.
    """
    args = build_parser().parse_args(argv)

    config = get_config()
    configure_logging(config.log_level)

    if args.source:
        config.source = args.source
    if args.output:
        config.output_path = args.output
    if args.max_videos is not None:
        config.max_videos = args.max_videos
    if args.batch_size:
        config.batch_size = args.batch_size
    if args.refresh:
        config.skip_existing = False

    logger.info(
        "cli_started",
        source=config.source,
        output_path=config.output_path,
        max_videos=config.max_videos,
        batch_size=config.batch_size,
    )

    print("\n" + "=" * 60)
    print("Video Ingestion Pipeline")
    print("=" * 60)
    print(f"Source: {config.source}")
    print(f"Output: {config.output_path}")
    print(f"Max videos: {config.max_videos or 'unlimited'}")
    print(f"Batch size: {config.batch_size}")
    print(f"Embedding model: {config.embedding_model} ({config.embedding_dimensions} dims)")
    print("=" * 60 + "\n")

    try:
        validate_runtime_config(config)
        pipeline = VideoIngestionPipeline(config)
        result = await pipeline.process_source()
    except (ConfigurationError, ProcessingFailureError, StorageError) as e:
        logger.exception("pipeline_setup_failed", error_type=type(e).__name__)
        print(f"\n❌ Pipeline failed: {e}")
        return 1

    print_summary(result)

    logger.info(
        "cli_completed",
        total_discovered=result.total_discovered,
        processed=result.processed,
        skipped=result.skipped,
        aborted=result.aborted,
    )
    return 1 if result.aborted else 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
