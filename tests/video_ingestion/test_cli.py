"""Unit tests for the ingestion command-line interface."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.video_ingestion.cli import main
from src.video_ingestion.config import IngestionConfig
from src.video_ingestion.errors import ProcessingFailureError, StorageError
from src.video_ingestion.schemas import DatabaseStats, PipelineResult


@pytest.mark.unit
class TestCli:
    """Test suite for the CLI entry point."""

    @pytest.fixture
    def mock_pipeline(self) -> MagicMock:
        """Create a pipeline mock returning a clean result."""
        pipeline = MagicMock()
        pipeline.process_source = AsyncMock(
            return_value=PipelineResult(
                total_discovered=3,
                processed=2,
                skipped=1,
                skipped_by_reason={"no_transcript": 1},
                segments_stored=12,
                batches_committed=1,
                stats=DatabaseStats(
                    video_count=2,
                    segment_count=12,
                    degraded_segment_count=0,
                    size_bytes=2 * 1024 * 1024,
                ),
            )
        )
        return pipeline

    @pytest.mark.asyncio
    async def test_main_success(
        self,
        config: IngestionConfig,
        mock_pipeline: MagicMock,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Test a completed run exits with 0 and prints the summary."""
        with (
            patch("src.video_ingestion.cli.get_config", return_value=config),
            patch(
                "src.video_ingestion.cli.VideoIngestionPipeline",
                return_value=mock_pipeline,
            ) as mock_cls,
        ):
            exit_code = await main([])

        assert exit_code == 0
        mock_cls.assert_called_once_with(config)
        output = capsys.readouterr().out
        assert "Successfully processed: 2" in output
        assert "  - no_transcript: 1" in output
        assert "Final store size: 2.00 MB" in output
        assert "No errors encountered" in output

    @pytest.mark.asyncio
    async def test_main_applies_arguments(
        self, config: IngestionConfig, mock_pipeline: MagicMock, tmp_path: Path
    ) -> None:
        """Test that command-line options override the environment config."""
        output_path = str(tmp_path / "custom.db")

        with (
            patch("src.video_ingestion.cli.get_config", return_value=config),
            patch(
                "src.video_ingestion.cli.VideoIngestionPipeline",
                return_value=mock_pipeline,
            ),
        ):
            await main(
                [
                    "https://www.youtube.com/playlist?list=PLxyz",
                    "--output",
                    output_path,
                    "--max-videos",
                    "5",
                    "--batch-size",
                    "2",
                    "--refresh",
                ]
            )

        assert config.source == "https://www.youtube.com/playlist?list=PLxyz"
        assert config.output_path == output_path
        assert config.max_videos == 5
        assert config.batch_size == 2
        assert config.skip_existing is False

    @pytest.mark.asyncio
    async def test_main_aborted_run(
        self,
        config: IngestionConfig,
        mock_pipeline: MagicMock,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Test that an aborted run exits with 1 and reports the resume point."""
        mock_pipeline.process_source.return_value = PipelineResult(
            processed=3,
            fatal_aborts=1,
            aborted=True,
            last_committed_video_id="v3",
            failed_video_ids=["v4", "v5"],
            errors=["fatal: commit_batch failed: database is locked"],
        )

        with (
            patch("src.video_ingestion.cli.get_config", return_value=config),
            patch(
                "src.video_ingestion.cli.VideoIngestionPipeline",
                return_value=mock_pipeline,
            ),
        ):
            exit_code = await main([])

        assert exit_code == 1
        output = capsys.readouterr().out
        assert "Resume after video: v3" in output
        assert "Not stored (failed batch): v4, v5" in output
        assert "database is locked" in output

    @pytest.mark.asyncio
    async def test_main_configuration_error(self, config: IngestionConfig) -> None:
        """Test that missing credentials stop the run before it starts."""
        config.supadata_api_key = ""

        with (
            patch("src.video_ingestion.cli.get_config", return_value=config),
            patch("src.video_ingestion.cli.VideoIngestionPipeline") as mock_cls,
        ):
            exit_code = await main([])

        assert exit_code == 1
        mock_cls.assert_not_called()

    @pytest.mark.asyncio
    async def test_main_discovery_failure(
        self, config: IngestionConfig, mock_pipeline: MagicMock
    ) -> None:
        """Test that a failed discovery exits with 1."""
        mock_pipeline.process_source.side_effect = ProcessingFailureError(
            "quota exceeded", stage="discovery"
        )

        with (
            patch("src.video_ingestion.cli.get_config", return_value=config),
            patch(
                "src.video_ingestion.cli.VideoIngestionPipeline",
                return_value=mock_pipeline,
            ),
        ):
            assert await main([]) == 1

    @pytest.mark.asyncio
    async def test_main_storage_setup_failure(
        self,
        config: IngestionConfig,
        mock_pipeline: MagicMock,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Test that a store that cannot be opened exits with 1 and a message."""
        mock_pipeline.process_source.side_effect = StorageError(
            "Store was created with 1024-dimension embeddings, configured 4",
            "schema",
        )

        with (
            patch("src.video_ingestion.cli.get_config", return_value=config),
            patch(
                "src.video_ingestion.cli.VideoIngestionPipeline",
                return_value=mock_pipeline,
            ),
        ):
            exit_code = await main([])

        assert exit_code == 1
        assert "Pipeline failed: Store was created" in capsys.readouterr().out
