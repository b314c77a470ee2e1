"""Metadata enrichment service deriving talk metadata from text signals."""

import re
from collections.abc import Iterable

from src.utils.logging import get_logger

from .schemas import (
    EnrichedMetadata,
    Level,
    MetadataSource,
    PartialEnrichment,
    SessionType,
    VideoRecord,
)

logger = get_logger(__name__)

CLOUD_SERVICES = [
    # Compute
    "EC2", "Lambda", "ECS", "EKS", "Fargate", "Batch", "Lightsail",
    # Storage
    "S3", "EBS", "EFS", "FSx", "Storage Gateway", "Backup",
    # Database
    "RDS", "DynamoDB", "ElastiCache", "Neptune", "DocumentDB", "Redshift", "Aurora",
    # Networking
    "VPC", "CloudFront", "Route 53", "API Gateway", "Load Balancer", "Direct Connect",
    # Security
    "IAM", "Cognito", "KMS", "Secrets Manager", "Certificate Manager", "WAF", "Shield",
    # Analytics
    "Kinesis", "EMR", "Glue", "Athena", "QuickSight", "Data Pipeline",
    # AI/ML
    "SageMaker", "Bedrock", "Rekognition", "Comprehend", "Textract", "Polly", "Transcribe",
    # Developer tools
    "CodeCommit", "CodeBuild", "CodeDeploy", "CodePipeline", "Cloud9", "X-Ray",
    # Management
    "CloudWatch", "CloudTrail", "Config", "Systems Manager", "CloudFormation", "CDK",
]

TOPIC_KEYWORDS = {
    "Architecture": ["architecture", "design pattern", "microservices", "serverless", "distributed"],
    "Security": ["security", "encryption", "authentication", "authorization", "compliance", "governance"],
    "DevOps": ["devops", "ci/cd", "deployment", "automation", "infrastructure as code"],
    "Machine Learning": ["machine learning", "artificial intelligence", "generative ai", "model training"],
    "Data Analytics": ["analytics", "big data", "etl", "data lake", "data warehouse"],
    "Networking": ["network", "connectivity", "routing", "dns", "load balancing"],
    "Storage": ["storage", "backup", "archive", "file system", "object storage"],
    "Database": ["database", "sql", "nosql", "relational", "time series"],
    "Monitoring": ["monitoring", "observability", "logging", "metrics", "alerting", "tracing"],
    "Cost Optimization": ["cost", "pricing", "billing", "reserved instances", "savings plans"],
}

INDUSTRY_KEYWORDS = {
    "Financial Services": ["bank", "banking", "fintech", "insurance", "trading"],
    "Healthcare": ["healthcare", "hospital", "patient", "clinical", "life sciences"],
    "Retail": ["retail", "e-commerce", "ecommerce", "shopping"],
    "Media & Entertainment": ["media", "streaming", "broadcast", "gaming"],
    "Automotive": ["automotive", "vehicle", "autonomous driving"],
    "Public Sector": ["government", "public sector", "nonprofit"],
}

KEY_TERMS = [
    "cloud", "hybrid", "multi-cloud", "edge", "serverless", "containers",
    "microservices", "monolith", "event-driven", "api-first", "decoupled",
    "kubernetes", "docker", "terraform", "ansible", "jenkins", "git",
    "agile", "devops", "cicd", "infrastructure as code", "gitops",
]

ADVANCED_TERMS = [
    "deep dive", "advanced", "expert", "complex", "sophisticated", "enterprise",
    "optimization", "performance tuning", "troubleshooting",
    "custom implementation", "advanced configuration",
]
INTRO_TERMS = [
    "introduction", "getting started", "basics", "fundamentals", "overview",
    "beginner", "first time", "simple", "quick start",
]
INTERMEDIATE_TERMS = [
    "best practices", "implementation", "use cases", "practical", "hands-on",
    "real world", "case study", "lessons learned",
]

# Session type indicators, checked in order
SESSION_TYPE_TERMS: list[tuple[SessionType, list[str]]] = [
    (SessionType.WORKSHOP, ["workshop", "hands-on", "lab"]),
    (SessionType.KEYNOTE, ["keynote", "opening", "closing"]),
    (SessionType.LIGHTNING_TALK, ["lightning", "quick talk", "5 minute"]),
    (SessionType.CHALK_TALK, ["chalk talk", "q&a"]),
    (SessionType.BREAKOUT, ["breakout"]),
]

# Level codes used in conference titles, e.g. "(SVS301)"
_LEVEL_CODE_PATTERN = re.compile(r"\(\s*[A-Z]{2,5}\s?([1-4])\d{2}(?:-[A-Z0-9]+)?\s*\)")
_LEVEL_BY_CODE = {
    "1": Level.INTRODUCTORY,
    "2": Level.INTERMEDIATE,
    "3": Level.ADVANCED,
    "4": Level.EXPERT,
}

_TRANSCRIPT_SPEAKER_PATTERNS = [
    re.compile(r"\bmy name is ([A-Z][a-z]+(?: [A-Z][a-z]+)?)"),
    re.compile(r"\bI'm ([A-Z][a-z]+ [A-Z][a-z]+)"),
    re.compile(r"\bpresented by[:\s]+([A-Z][a-z]+ [A-Z][a-z]+)", re.IGNORECASE),
]
_METADATA_SPEAKER_PATTERNS = [
    re.compile(r"\bwith ([A-Z][a-z]+ [A-Z][a-z]+)"),
    re.compile(r"\bby ([A-Z][a-z]+ [A-Z][a-z]+)"),
    re.compile(r"\bspeakers?[:\s]+([A-Z][a-z]+ [A-Z][a-z]+)", re.IGNORECASE),
]

METADATA_CONFIDENCE_CAP = 0.7


def _unique(values: Iterable[str]) -> list[str]:
    """De-duplicate while keeping first-seen order."""
    return list(dict.fromkeys(values))


class EnrichmentService:
    """Service for extracting structured talk metadata from text.

    Extraction is heuristic and never raises on missing input: absent signal
    produces sentinel values and a low confidence score.
    """

    def __init__(self) -> None:
        self._service_patterns = [
            (
                service,
                re.compile(
                    rf"\b(?:amazon\s+|aws\s+)?{re.escape(service.lower())}\b"
                ),
            )
            for service in CLOUD_SERVICES
        ]

    def extract_from_transcript(self, text: str) -> PartialEnrichment:
        """Derive a partial enrichment from transcript content alone.

        Args:
            text: Full transcript text (may be empty).

        Returns:
            PartialEnrichment; confidence 0.0 with no signals for empty text.
        """
        if not text or not text.strip():
            logger.info("transcript_enrichment_empty")
            return PartialEnrichment(source=MetadataSource.TRANSCRIPT, confidence=0.0)

        lowered = text.lower()
        services = self._extract_services(lowered)
        topics = self._match_groups(lowered, TOPIC_KEYWORDS)

        partial = PartialEnrichment(
            source=MetadataSource.TRANSCRIPT,
            level=self._infer_level(lowered),
            session_type=self._infer_session_type(lowered),
            services=services,
            topics=topics,
            industry=self._match_groups(lowered, INDUSTRY_KEYWORDS),
            speakers=self._extract_speakers(text, _TRANSCRIPT_SPEAKER_PATTERNS),
            keywords=self._extract_key_terms(lowered),
            confidence=self._confidence(text, services, topics),
        )
        logger.debug(
            "transcript_enrichment_extracted",
            services=len(partial.services),
            topics=len(partial.topics),
            confidence=partial.confidence,
        )
        return partial

    def extract_from_video_metadata(self, video: VideoRecord) -> PartialEnrichment:
        """Derive a partial enrichment from title, description and tags.

        Args:
            video: Discovered video record.

        Returns:
            PartialEnrichment with confidence capped below transcript level.
        """
        title_and_description = f"{video.title} {video.description}"
        combined = f"{title_and_description} {' '.join(video.tags)}"
        if not combined.strip():
            return PartialEnrichment(
                source=MetadataSource.VIDEO_METADATA, confidence=0.0
            )

        lowered = combined.lower()
        services = self._extract_services(lowered)
        topics = self._match_groups(lowered, TOPIC_KEYWORDS)

        level = self._level_from_code(video.title) or self._infer_level(lowered)

        return PartialEnrichment(
            source=MetadataSource.VIDEO_METADATA,
            level=level,
            session_type=self._infer_session_type(title_and_description.lower()),
            services=services,
            topics=topics,
            industry=self._match_groups(lowered, INDUSTRY_KEYWORDS),
            speakers=self._extract_speakers(
                title_and_description, _METADATA_SPEAKER_PATTERNS
            ),
            keywords=self._extract_key_terms(lowered),
            confidence=min(
                METADATA_CONFIDENCE_CAP, self._confidence(combined, services, topics)
            ),
        )

    def combine(
        self, first: PartialEnrichment, second: PartialEnrichment
    ) -> EnrichedMetadata:
        """Merge two partial enrichments into one total record.

        Scalar fields come from the higher-confidence partial that has a
        signal for them (ties favor ``first``). Set fields are unions. The
        merged confidence is the maximum of both.
        """
        ranked = sorted([first, second], key=lambda p: p.confidence, reverse=True)

        level = next(
            (p.level for p in ranked if p.level not in (None, Level.UNKNOWN)),
            Level.UNKNOWN,
        )
        session_type = next(
            (
                p.session_type
                for p in ranked
                if p.session_type not in (None, SessionType.UNKNOWN)
            ),
            SessionType.UNKNOWN,
        )

        contributing = [p for p in (first, second) if p.confidence > 0]
        if len(contributing) == 2:
            source = MetadataSource.COMBINED
        elif contributing:
            source = contributing[0].source
        else:
            source = MetadataSource.NONE

        return EnrichedMetadata(
            level=level,
            session_type=session_type,
            services=_unique([*first.services, *second.services]),
            topics=_unique([*first.topics, *second.topics]),
            industry=_unique([*first.industry, *second.industry]),
            speakers=_unique([*first.speakers, *second.speakers]),
            keywords=_unique([*first.keywords, *second.keywords]),
            source=source,
            confidence=max(first.confidence, second.confidence),
        )

    def enrich(self, video: VideoRecord, transcript_text: str) -> VideoRecord:
        """Run both extractions and return the enriched video record."""
        from_transcript = self.extract_from_transcript(transcript_text)
        from_metadata = self.extract_from_video_metadata(video)
        enriched = self.combine(from_transcript, from_metadata)
        logger.info(
            "video_enriched",
            video_id=video.id,
            level=enriched.level.value,
            session_type=enriched.session_type.value,
            source=enriched.source.value,
            confidence=enriched.confidence,
        )
        return video.with_enrichment(enriched)

    def _extract_services(self, lowered: str) -> list[str]:
        return [service for service, pattern in self._service_patterns if pattern.search(lowered)]

    @staticmethod
    def _match_groups(lowered: str, groups: dict[str, list[str]]) -> list[str]:
        return [
            name
            for name, keywords in groups.items()
            if any(keyword in lowered for keyword in keywords)
        ]

    @staticmethod
    def _extract_key_terms(lowered: str) -> list[str]:
        return [term for term in KEY_TERMS if term in lowered]

    @staticmethod
    def _infer_level(lowered: str) -> Level:
        advanced = sum(1 for term in ADVANCED_TERMS if term in lowered)
        intro = sum(1 for term in INTRO_TERMS if term in lowered)
        intermediate = sum(1 for term in INTERMEDIATE_TERMS if term in lowered)

        if advanced >= 2:
            return Level.ADVANCED
        if intro >= 2:
            return Level.INTRODUCTORY
        if intermediate >= 1:
            return Level.INTERMEDIATE
        return Level.UNKNOWN

    @staticmethod
    def _level_from_code(title: str) -> Level | None:
        match = _LEVEL_CODE_PATTERN.search(title)
        if match is None:
            return None
        return _LEVEL_BY_CODE[match.group(1)]

    @staticmethod
    def _infer_session_type(lowered: str) -> SessionType:
        for session_type, terms in SESSION_TYPE_TERMS:
            if any(re.search(rf"\b{re.escape(term)}\b", lowered) for term in terms):
                return session_type
        return SessionType.UNKNOWN

    @staticmethod
    def _extract_speakers(text: str, patterns: list[re.Pattern[str]]) -> list[str]:
        speakers = []
        for pattern in patterns:
            for match in pattern.finditer(text):
                speaker = match.group(1).strip()
                if 2 < len(speaker) < 50:
                    speakers.append(speaker)
        return _unique(speakers)

    @staticmethod
    def _confidence(text: str, services: list[str], topics: list[str]) -> float:
        confidence = 0.5
        if services:
            confidence += 0.2
        if len(services) > 2:
            confidence += 0.1
        if topics:
            confidence += 0.1
        if len(topics) > 2:
            confidence += 0.1

        word_count = len(text.split())
        if word_count > 500:
            confidence += 0.1
        if word_count > 1000:
            confidence += 0.1

        return round(min(confidence, 1.0), 2)
