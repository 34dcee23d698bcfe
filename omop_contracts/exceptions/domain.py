"""
Domain exceptions for the contract engine and its queue integration.

Per-message data problems (schema and integrity violations) are reported as
values, not raised. The exceptions here cover the cases that are fatal for a
message (illegal status transitions) or for the process (wiring bugs).
"""

from typing import Self


class ContractError(Exception):
    """Base exception for all OMOP contract errors."""

    def with_context(self, detail: str) -> Self:
        """Add context information to the exception.

        Args:
            detail: Additional details about the error

        Returns:
            Self with updated message
        """
        self.args = (detail,)
        return self


class ConfigurationError(ContractError):
    """Raised when the engine is wired incorrectly (e.g. an unknown stage)."""

    pass


class UnknownStageError(ConfigurationError):
    """Raised when a schema is requested for a stage that does not exist."""

    def __init__(self, stage: object):
        self.stage = stage
        super().__init__(f"Unknown pipeline stage '{stage}'")


class IllegalTransitionError(ContractError):
    """Raised when a message status moves backward or sideways.

    The message has already been finalized (or never started) and must be
    quarantined rather than forwarded.
    """

    def __init__(self, current: str | None, target: str, message_id: str | None = None):
        self.current = current
        self.target = target
        self.message_id = message_id
        subject = f"Message '{message_id}'" if message_id else "Message"
        super().__init__(f"{subject}: illegal status transition {current} -> {target}")


# Queue integration errors
class PipelineError(ContractError):
    """Base exception for queue pipeline errors."""

    pass


class PipelineStepError(PipelineError):
    """Raised when a stage task fails."""

    def __init__(self, stage: str, detail: str):
        self.stage = stage
        self.detail = detail
        super().__init__(f"Stage '{stage}' failed: {detail}")


class PipelineConfigError(PipelineError):
    """Raised when the stage pipeline is configured incorrectly."""

    pass
