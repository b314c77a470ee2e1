"""Error taxonomy for the ingestion pipeline."""


class IngestionError(Exception):
    """Base exception for ingestion pipeline errors."""


class InvalidInputError(IngestionError):
    """Raised when a caller hands a pure component empty or malformed input."""


class DimensionMismatchError(InvalidInputError):
    """Raised when two embedding vectors of different length are compared."""

    def __init__(self, left: int, right: int) -> None:
        self.left = left
        self.right = right
        super().__init__(f"Embedding dimensions differ: {left} != {right}")


class ProcessingFailureError(IngestionError):
    """Raised when a remote dependency fails or returns unusable data."""

    def __init__(self, message: str, stage: str, video_id: str | None = None) -> None:
        self.stage = stage
        self.video_id = video_id
        super().__init__(message)


class StorageError(IngestionError):
    """Raised when a storage operation fails. The transaction is rolled back."""

    def __init__(self, message: str, operation: str) -> None:
        self.operation = operation
        super().__init__(message)


class IntegrityFailureError(IngestionError):
    """Raised when post-commit verification of the store fails."""

    def __init__(self, issues: list[str]) -> None:
        self.issues = issues
        super().__init__("Database integrity check failed: " + "; ".join(issues))


class ConfigurationError(IngestionError):
    """Raised at startup when the run cannot be configured."""
