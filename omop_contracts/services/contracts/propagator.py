"""
Status state machine and failure propagation.

Every message moves ``pending -> processing -> {completed, failed}`` within
its stage. Anything else (going backward, standing still, skipping
``processing``) means an already-finalized message is being reprocessed:
the propagator raises IllegalTransitionError and the caller quarantines the
message.

A failed message is never dropped. ``forward`` builds the next hop for it,
keeping the correlation id and error metadata so downstream stages pass it
through without touching the (absent) payload.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING

from omop_contracts.exceptions import IllegalTransitionError
from omop_contracts.models import ErrorInfo, MessageStatus, PipelineMessage, utc_now
from omop_contracts.models.message import new_message_id

if TYPE_CHECKING:
    from omop_contracts.types import Clock

ALLOWED_TRANSITIONS: Mapping[MessageStatus | None, frozenset[MessageStatus]] = MappingProxyType(
    {
        None: frozenset({MessageStatus.pending}),
        MessageStatus.pending: frozenset({MessageStatus.processing}),
        MessageStatus.processing: frozenset({MessageStatus.completed, MessageStatus.failed}),
        MessageStatus.completed: frozenset(),
        MessageStatus.failed: frozenset(),
    }
)

# Payload fields a pass-through failure must not carry forward
_PAYLOAD_FIELDS = ("raw_text", "preprocessed_text", "chunks", "chunk_count", "terms", "results")


def is_allowed(current: MessageStatus | str | None, target: MessageStatus | str) -> bool:
    """Check a single transition against the state machine."""
    try:
        current_status = MessageStatus(current) if current is not None else None
        target_status = MessageStatus(target)
    except ValueError:
        return False
    return target_status in ALLOWED_TRANSITIONS[current_status]


def check_sequence(statuses: Iterable[MessageStatus | str]) -> bool:
    """Check a whole status history.

    Accepts any prefix of ``pending -> processing -> completed|failed``.

    Examples:
        >>> check_sequence(["pending", "processing", "failed"])
        True
        >>> check_sequence(["pending", "completed"])
        False
    """
    current: MessageStatus | str | None = None
    for status in statuses:
        if not is_allowed(current, status):
            return False
        current = status
    return True


def should_process(message: PipelineMessage) -> bool:
    """Whether a consuming stage should operate on the message payload.

    Failed messages are passed through unprocessed.
    """
    return message.status != MessageStatus.failed


class StatusPropagator:
    """Applies status transitions to pipeline messages.

    Messages are immutable from the propagator's point of view: every
    operation returns an updated copy.

    Args:
        clock: Time source for timestamps of forwarded messages.
    """

    def __init__(self, clock: Clock | None = None):
        self.clock = clock or utc_now

    def derive(self, upstream: PipelineMessage) -> PipelineMessage:
        """Start a new ``pending`` message for the next stage from a consumed one.

        The correlation id and metadata are carried over, the message id is
        fresh and ``parent_message_id`` points to the consumed message.
        """
        return PipelineMessage(
            correlation_id=upstream.correlation_id,
            parent_message_id=upstream.message_id,
            timestamp=self.clock(),
            status=MessageStatus.pending,
            metadata=upstream.metadata.model_copy(deep=True),
        )

    def transition(self, message: PipelineMessage, target: MessageStatus | str) -> PipelineMessage:
        """Move a message to a new status.

        Args:
            message: Message in its current status.
            target: Requested status.

        Returns:
            Copy of the message with the new status.

        Raises:
            IllegalTransitionError: If the state machine forbids the move.
            ValueError: If ``target`` is not a known status.
        """
        target = MessageStatus(target)
        if target == MessageStatus.failed and message.metadata.error is None:
            raise IllegalTransitionError(
                message.status.value, target.value, message.message_id
            ).with_context(
                f"Message '{message.message_id}' cannot enter 'failed' without error "
                "metadata; use fail()"
            )
        if not is_allowed(message.status, target):
            raise IllegalTransitionError(message.status.value, target.value, message.message_id)
        return message.model_copy(update={"status": target})

    def start(self, message: PipelineMessage) -> PipelineMessage:
        """``pending -> processing``."""
        return self.transition(message, MessageStatus.processing)

    def complete(self, message: PipelineMessage, **payload: object) -> PipelineMessage:
        """``processing -> completed``, attaching the stage payload."""
        completed = self.transition(message, MessageStatus.completed)
        if payload:
            completed = completed.model_validate({**completed.model_dump(), **payload})
        return completed

    def fail(self, message: PipelineMessage, kind: str, description: str) -> PipelineMessage:
        """``processing -> failed``, recording the error in ``metadata.error``.

        Args:
            message: Message being processed.
            kind: Short error category (e.g. ``"model_timeout"``).
            description: Human-readable explanation.

        Returns:
            Failed copy of the message.

        Raises:
            IllegalTransitionError: If the message is not ``processing``.
        """
        if not is_allowed(message.status, MessageStatus.failed):
            raise IllegalTransitionError(
                message.status.value, MessageStatus.failed.value, message.message_id
            )
        metadata = message.metadata.model_copy(
            update={"error": ErrorInfo(kind=kind, description=description)}
        )
        return message.model_copy(update={"status": MessageStatus.failed, "metadata": metadata})

    def forward(self, message: PipelineMessage) -> PipelineMessage:
        """Build the next-hop message for a failed message.

        The correlation id and metadata (including the error) are carried
        unchanged, the message id is fresh and points back to its parent, and
        the stage payload is dropped.

        Raises:
            IllegalTransitionError: If the message is not ``failed``.
        """
        if message.status != MessageStatus.failed:
            raise IllegalTransitionError(
                message.status.value, MessageStatus.failed.value, message.message_id
            ).with_context(
                f"Only failed messages are passed through; '{message.message_id}' "
                f"is '{message.status.value}'"
            )
        update: dict[str, object] = {field: None for field in _PAYLOAD_FIELDS}
        update.update(
            message_id=new_message_id(),
            parent_message_id=message.message_id,
            timestamp=self.clock(),
            metadata=message.metadata.model_copy(deep=True),
        )
        return message.model_copy(update=update)
