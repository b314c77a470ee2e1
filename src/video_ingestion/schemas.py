"""Pydantic schemas for the video ingestion pipeline."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator


class Level(str, Enum):
    """Technical level of a talk."""

    INTRODUCTORY = "Introductory"
    INTERMEDIATE = "Intermediate"
    ADVANCED = "Advanced"
    EXPERT = "Expert"
    UNKNOWN = "Unknown"


class SessionType(str, Enum):
    """Format of a talk."""

    BREAKOUT = "Breakout"
    CHALK_TALK = "Chalk Talk"
    WORKSHOP = "Workshop"
    KEYNOTE = "Keynote"
    LIGHTNING_TALK = "Lightning Talk"
    UNKNOWN = "Unknown"


class MetadataSource(str, Enum):
    """Which extraction(s) produced a video's enrichment fields."""

    TRANSCRIPT = "transcript"
    VIDEO_METADATA = "video-metadata"
    COMBINED = "combined"
    NONE = "none"


class VideoStage(str, Enum):
    """Per-video processing stages, in order, plus the two terminal states."""

    DISCOVERING = "discovering"
    EXTRACTING_TRANSCRIPT = "extracting-transcript"
    ENRICHING = "enriching"
    BUILDING_SEGMENTS = "building-segments"
    EMBEDDING = "embedding"
    QUEUED_FOR_COMMIT = "queued-for-commit"
    SKIPPED = "skipped"
    FAILED = "failed"


class SkipReason(str, Enum):
    """Categories used to aggregate skipped videos in the run summary."""

    NO_TRANSCRIPT = "no_transcript"
    TRANSCRIPT_FETCH_FAILED = "transcript_fetch_failed"
    ENRICHMENT_FAILED = "enrichment_failed"
    SEGMENT_BUILD_FAILED = "segment_build_failed"
    EMBEDDING_FAILED = "embedding_failed"
    ALREADY_STORED = "already_stored"


class VideoRecord(BaseModel):
    """One discovered video plus its enrichment fields.

    Discovery fills the identity fields. Enrichment happens exactly once via
    :meth:`with_enrichment`, which returns a new record.
    """

    id: str
    title: str
    url: str
    description: str = ""
    channel_id: str = ""
    channel_title: str = ""
    published_at: datetime | None = None
    duration_seconds: int = 0
    thumbnail_url: str = ""
    tags: list[str] = Field(default_factory=list)

    # Enrichment
    level: Level = Level.UNKNOWN
    services: list[str] = Field(default_factory=list)
    topics: list[str] = Field(default_factory=list)
    industry: list[str] = Field(default_factory=list)
    session_type: SessionType = SessionType.UNKNOWN
    speakers: list[str] = Field(default_factory=list)
    metadata_source: MetadataSource = MetadataSource.NONE
    metadata_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    extracted_keywords: list[str] = Field(default_factory=list)

    def with_enrichment(self, enriched: "EnrichedMetadata") -> "VideoRecord":
        """Return a copy of this record carrying the merged enrichment."""
        return self.model_copy(
            update={
                "level": enriched.level,
                "services": list(enriched.services),
                "topics": list(enriched.topics),
                "industry": list(enriched.industry),
                "session_type": enriched.session_type,
                "speakers": list(enriched.speakers),
                "metadata_source": enriched.source,
                "metadata_confidence": enriched.confidence,
                "extracted_keywords": list(enriched.keywords),
            }
        )


class TranscriptSegment(BaseModel):
    """Single raw transcript span, timed in seconds.

    Produced by the discovery collaborator and read-only afterwards.
    """

    start_time: float = Field(ge=0.0)
    end_time: float
    text: str
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    speaker: str | None = None

    @field_validator("text")
    @classmethod
    def _text_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("transcript segment text must not be empty")
        return value

    @model_validator(mode="after")
    def _end_after_start(self) -> "TranscriptSegment":
        if self.end_time <= self.start_time:
            raise ValueError("transcript segment must end after it starts")
        return self


class Transcript(BaseModel):
    """Full video transcript as an ordered list of timed spans."""

    video_id: str
    segments: list[TranscriptSegment]
    lang: str = "en"
    available_langs: list[str] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return " ".join(segment.text for segment in self.segments)


class VideoSegment(BaseModel):
    """Persisted unit of search.

    ``embedding`` is empty until the embedding stage fills it with exactly
    ``embedding_dimensions`` finite components (the zero vector when
    generation failed, in which case ``embedding_degraded`` is set).
    """

    id: str
    video_id: str
    start_time: float
    end_time: float
    text: str
    embedding: list[float] = Field(default_factory=list)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    speaker: str | None = None
    embedding_degraded: bool = False


class PartialEnrichment(BaseModel):
    """Result of one metadata extraction.

    ``level`` and ``session_type`` are None when the source carried no signal
    for them, which lets :class:`EnrichedMetadata` merging tell "unknown"
    apart from "not looked at".
    """

    source: MetadataSource
    level: Level | None = None
    session_type: SessionType | None = None
    services: list[str] = Field(default_factory=list)
    topics: list[str] = Field(default_factory=list)
    industry: list[str] = Field(default_factory=list)
    speakers: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class EnrichedMetadata(BaseModel):
    """Merged enrichment with explicit sentinel values instead of None."""

    level: Level = Level.UNKNOWN
    session_type: SessionType = SessionType.UNKNOWN
    services: list[str] = Field(default_factory=list)
    topics: list[str] = Field(default_factory=list)
    industry: list[str] = Field(default_factory=list)
    speakers: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    source: MetadataSource = MetadataSource.NONE
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class VideoOutcome(BaseModel):
    """What happened to one video in the processing loop."""

    video_id: str
    stage: VideoStage
    video: VideoRecord | None = None
    segments: list[VideoSegment] = Field(default_factory=list)
    skip_reason: SkipReason | None = None
    error: str | None = None

    @property
    def queued(self) -> bool:
        return self.stage == VideoStage.QUEUED_FOR_COMMIT


class DatabaseStats(BaseModel):
    """Row counts and file size of the store."""

    video_count: int
    segment_count: int
    degraded_segment_count: int
    size_bytes: int


class IntegrityReport(BaseModel):
    """Outcome of a storage verification pass."""

    ok: bool
    issues: list[str] = Field(default_factory=list)
    video_query_ms: float = 0.0
    segment_query_ms: float = 0.0
    fts_query_ms: float = 0.0


class PipelineResult(BaseModel):
    """Result of a pipeline run.

    Summary statistics used for the CLI report. ``last_committed_video_id`` is
    the resume cursor when the run aborted; ``failed_video_ids`` lists the
    processed videos lost with the batch whose commit failed.
    """

    total_discovered: int = 0
    processed: int = 0
    skipped: int = 0
    skipped_by_reason: dict[str, int] = Field(default_factory=dict)
    segments_stored: int = 0
    degraded_segments: int = 0
    batches_committed: int = 0
    fatal_aborts: int = 0
    aborted: bool = False
    last_committed_video_id: str | None = None
    failed_video_ids: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    stats: DatabaseStats | None = None
    integrity: IntegrityReport | None = None

    def record_skip(self, reason: SkipReason) -> None:
        self.skipped += 1
        self.skipped_by_reason[reason.value] = (
            self.skipped_by_reason.get(reason.value, 0) + 1
        )
