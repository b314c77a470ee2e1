"""Segment builder turning raw transcript spans into addressable segments."""

from src.utils.logging import get_logger

from .schemas import Transcript, VideoSegment

logger = get_logger(__name__)


def segment_id(video_id: str, ordinal: int) -> str:
    """Stable identifier of the ``ordinal``-th (1-based) segment of a video."""
    return f"{video_id}_seg_{ordinal}"


class SegmentBuilder:
    """Builds one :class:`VideoSegment` per raw transcript span.

    Identifiers depend only on the video id and span position, so repeated
    runs over the same transcript produce the same segments in the same order.
    """

    def build(self, video_id: str, transcript: Transcript) -> list[VideoSegment]:
        """Create segments with empty embeddings for a transcript.

        Args:
            video_id: Id of the video the transcript belongs to.
            transcript: Ordered raw transcript spans.

        Returns:
            Segments in transcript order; empty when the transcript has no
            spans, which tells the caller to skip the video.
        """
        segments = [
            VideoSegment(
                id=segment_id(video_id, ordinal),
                video_id=video_id,
                start_time=span.start_time,
                end_time=span.end_time,
                text=span.text,
                confidence=span.confidence,
                speaker=span.speaker or self._provisional_speaker(ordinal),
            )
            for ordinal, span in enumerate(transcript.segments, start=1)
        ]

        logger.info("segments_built", video_id=video_id, segments=len(segments))
        return segments

    @staticmethod
    def _provisional_speaker(ordinal: int) -> str:
        # Alternating placeholder until diarization is available
        return f"Speaker {(ordinal - 1) % 2 + 1}"
