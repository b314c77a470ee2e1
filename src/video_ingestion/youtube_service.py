"""YouTube discovery service for videos and transcripts via the Supadata API."""

import re
from datetime import datetime
from typing import Any

from pydantic import ValidationError
from supadata import Supadata

from src.utils.logging import get_logger

from .config import IngestionConfig
from .errors import ProcessingFailureError
from .schemas import Transcript, TranscriptSegment, VideoRecord

logger = get_logger(__name__)

_PLAYLIST_ID_PATTERN = re.compile(r"[?&]list=([A-Za-z0-9_-]+)")
_PLAYLIST_PREFIXES = ("PL", "UU", "OL", "FL", "LL")


def parse_playlist_id(source: str) -> str | None:
    """Return the playlist id if ``source`` names a playlist, else None."""
    match = _PLAYLIST_ID_PATTERN.search(source)
    if match:
        return match.group(1)
    if source.startswith(_PLAYLIST_PREFIXES) and "/" not in source:
        return source
    return None


class YouTubeService:
    """Service for fetching YouTube data via the Supadata API.

    Resolves a channel or playlist into video records and fetches timed
    transcripts. A missing transcript is reported as None, not as an error.
    """

    def __init__(self, config: IngestionConfig):
        """Initialize YouTube service with configuration.

        Args:
            config: Configuration object with Supadata API key and settings.
        """
        self.config = config
        self.client = Supadata(api_key=config.supadata_api_key)
        logger.info(
            "youtube_service_initialized",
            api_key_present=bool(config.supadata_api_key),
        )

    async def fetch_channel_or_playlist_videos(
        self, source: str, limit: int | None = None
    ) -> list[VideoRecord]:
        """Resolve a channel or playlist into discovered video records.

        Args:
            source: Channel id, handle or URL; or playlist URL or id.
            limit: Maximum number of videos to return (None for all).

        Returns:
            Video records in the order the source lists them.

        Raises:
            ProcessingFailureError: If the listing request fails.
        """
        playlist_id = parse_playlist_id(source)
        logger.info(
            "fetching_source_videos",
            source=source,
            playlist_id=playlist_id,
            limit=limit,
        )

        try:
            if playlist_id:
                response = self.client.youtube.playlist.videos(
                    id=playlist_id, limit=limit
                )
            else:
                response = self.client.youtube.channel.videos(
                    id=source,
                    type="video",  # Exclude shorts and live streams
                    limit=limit,
                )
        except Exception as e:
            logger.exception(
                "source_fetch_failed",
                source=source,
                error_type=type(e).__name__,
            )
            raise ProcessingFailureError(
                f"Failed to fetch videos from {source}: {e}", stage="discovery"
            ) from e

        video_ids = list(response.video_ids)
        if limit:
            video_ids = video_ids[:limit]
        logger.info("video_ids_fetched", count=len(video_ids))

        videos = [self._fetch_video_record(video_id) for video_id in video_ids]
        logger.info("videos_discovered", total=len(videos))
        return videos

    def _fetch_video_record(self, video_id: str) -> VideoRecord:
        """Fetch per-video metadata, degrading to a minimal record on failure."""
        url = f"https://www.youtube.com/watch?v={video_id}"
        try:
            info = self.client.youtube.video(id=video_id)
        except Exception as e:
            logger.warning(
                "video_metadata_unavailable",
                video_id=video_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return VideoRecord(id=video_id, title="", url=url)

        channel = getattr(info, "channel", None) or {}
        if not isinstance(channel, dict):
            channel = {"id": getattr(channel, "id", ""), "name": getattr(channel, "name", "")}

        return VideoRecord(
            id=video_id,
            title=getattr(info, "title", "") or "",
            url=url,
            description=getattr(info, "description", "") or "",
            channel_id=channel.get("id") or "",
            channel_title=channel.get("name") or "",
            published_at=self._parse_upload_date(getattr(info, "upload_date", None)),
            duration_seconds=int(getattr(info, "duration", 0) or 0),
            thumbnail_url=getattr(info, "thumbnail", "") or "",
            tags=list(getattr(info, "tags", None) or []),
        )

    @staticmethod
    def _parse_upload_date(value: Any) -> datetime | None:
        if isinstance(value, datetime):
            return value
        if not value:
            return None
        text = str(value)
        try:
            if len(text) == 8 and text.isdigit():
                # yt-dlp style YYYYMMDD
                return datetime.strptime(text, "%Y%m%d")
            return datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None

    async def extract_transcript(
        self, video_id: str, retry: bool = False
    ) -> Transcript | None:
        """Fetch the timed transcript for a video.

        Spans with blank text or a non-positive duration are dropped.

        Args:
            video_id: YouTube video ID.
            retry: Whether this is a retry attempt (for logging purposes).

        Returns:
            Transcript with spans in seconds, or None if unavailable.

        Raises:
            Exception: If the API request fails for another reason.
        """
        logger.info("fetching_transcript", video_id=video_id, retry=retry)

        try:
            response = self.client.youtube.transcript(
                video_id=video_id,
                text=False,  # Segments with timestamps instead of plain text
            )
        except Exception as e:
            if self._is_unavailable(e):
                logger.warning("transcript_unavailable", video_id=video_id)
                return None
            logger.exception(
                "transcript_fetch_error",
                video_id=video_id,
                error_type=type(e).__name__,
            )
            raise

        segments: list[TranscriptSegment] = []
        dropped = 0
        for chunk in response.content or []:
            start_ms = float(chunk.offset)
            try:
                segments.append(
                    TranscriptSegment(
                        start_time=start_ms / 1000,
                        end_time=(start_ms + float(chunk.duration)) / 1000,
                        text=chunk.text,
                        speaker=getattr(chunk, "speaker", None),
                    )
                )
            except ValidationError:
                dropped += 1

        if dropped:
            logger.warning("transcript_spans_dropped", video_id=video_id, dropped=dropped)

        transcript = Transcript(
            video_id=video_id,
            segments=segments,
            lang=getattr(response, "lang", "en") or "en",
            available_langs=list(getattr(response, "available_langs", None) or []),
        )
        logger.info(
            "transcript_fetched",
            video_id=video_id,
            segments=len(segments),
            lang=transcript.lang,
        )
        return transcript

    async def get_transcript_text(self, video_id: str) -> str | None:
        """Fetch the transcript of a video as plain text.

        Returns:
            Transcript text, or None if unavailable.
        """
        try:
            response = self.client.youtube.transcript(video_id=video_id, text=True)
        except Exception as e:
            if self._is_unavailable(e):
                logger.warning("transcript_unavailable", video_id=video_id)
                return None
            logger.exception(
                "transcript_fetch_error",
                video_id=video_id,
                error_type=type(e).__name__,
            )
            raise

        content = response.content
        if isinstance(content, list):
            content = " ".join(chunk.text for chunk in content)
        return content or None

    @staticmethod
    def _is_unavailable(error: Exception) -> bool:
        # Supadata reports missing transcripts as an error code, not an empty body
        error_str = str(error).lower()
        return "transcript-unavailable" in error_str or "206" in error_str
