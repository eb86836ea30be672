from __future__ import annotations


class StagelineError(Exception):
    """Base error for stageline."""


class ConfigurationError(StagelineError):
    """Raised when a pipeline definition or runtime option is invalid."""


class ProvisioningError(StagelineError):
    """Raised when the execution context of a run cannot be created."""

    def __init__(self, run_id: str, message: str) -> None:
        super().__init__(f"{run_id}: {message}")
        self.run_id = run_id
        self.message = message


class StageError(StagelineError):
    """Raised by a stage body to report a failure with a message."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.message = message


class PostActionError(StagelineError):
    """Raised when a post-action cannot publish or archive its output."""


class NotificationError(StagelineError):
    """Raised when a notification cannot be delivered."""
