"""
TaskIQ middlewares for contract checks, stage chaining, logging and dead letters.

PipelineLoggingMiddleware logs task lifecycle events with correlation context.

ContractMiddleware runs the contract engine on every consumed and produced
stage message, and routes messages with illegal status transitions to the
quarantine queue and contract-violating results to the dead letter queue.

StageChainMiddleware hands every accepted stage result to the next stage.

DeadLetterMiddleware routes permanently failed tasks to the dead letter queue.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from taskiq import TaskiqMiddleware

from omop_contracts.models import PipelineMessage, PipelineStage
from omop_contracts.services.contracts import BoundaryAction, ContractContext
from omop_contracts.utils.logger import logger

from .broker import DLQ_QUEUE, QUARANTINE_QUEUE

if TYPE_CHECKING:
    from aio_pika.abc import AbstractChannel, AbstractRobustConnection
    from taskiq import TaskiqMessage, TaskiqResult

    from omop_contracts.services.contracts import BoundaryReport

# Label written by ContractMiddleware and read by StageChainMiddleware
CONTRACT_ACTION_LABEL = "contract_action"

# Payload key marking a consumed message rejected by its input contract
REJECTED_INPUT_KEY = "contract_rejected"


def _stage_of(message: TaskiqMessage) -> PipelineStage | None:
    stage = message.labels.get("stage")
    if not stage:
        return None
    try:
        return PipelineStage(stage)
    except ValueError:
        logger.error(
            f"Task '{message.task_name}' (id={message.task_id}) has unknown stage '{stage}'"
        )
        return None


def _first_arg(message: TaskiqMessage) -> Any:
    return message.args[0] if message.args else None


def _as_wire(value: Any) -> Any:
    if isinstance(value, PipelineMessage):
        return value.to_wire()
    return value


class _AmqpPublisher:
    """Persistent AMQP channel for publishing JSON records to side queues.

    Args:
        amqp_url: Optional AMQP URL override. Falls back to ``_build_amqp_url()``
            when not provided (production default).
        queues: Queues to declare on startup.
    """

    def __init__(self, amqp_url: str | None, queues: tuple[str, ...]) -> None:
        self._amqp_url = amqp_url
        self._queues = queues
        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractChannel | None = None

    async def connect(self) -> None:
        import aio_pika

        from .broker import _build_amqp_url

        url = self._amqp_url or _build_amqp_url()
        self._connection = await aio_pika.connect_robust(url)
        self._channel = await self._connection.channel()
        for queue in self._queues:
            await self._channel.declare_queue(queue, durable=True)

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            self._channel = None

    async def publish(self, queue: str, payload: dict[str, Any]) -> bool:
        """Publish a JSON record. Returns False (and logs) when it cannot be delivered."""
        import aio_pika

        if self._channel is None:
            logger.error(
                f"AMQP channel not initialized, cannot publish to '{queue}'; "
                "was startup() called?"
            )
            return False
        try:
            await self._channel.default_exchange.publish(
                aio_pika.Message(
                    body=json.dumps(payload, default=str).encode(),
                    content_type="application/json",
                    delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                ),
                routing_key=queue,
            )
        except Exception as e:
            logger.error(f"Failed to publish to '{queue}': {e}")
            return False
        return True


class PipelineLoggingMiddleware(TaskiqMiddleware):
    """Logs task send/complete events."""

    @staticmethod
    def _log_prefix(message: TaskiqMessage) -> str:
        stage = message.labels.get("stage", "")
        correlation_id = message.labels.get("correlation_id", "")
        return f"[stage={stage} correlation={correlation_id}] " if stage else ""

    async def pre_send(self, message: TaskiqMessage) -> TaskiqMessage:
        """Log before a task message is sent to the broker.

        Args:
            message: The outgoing task message.

        Returns:
            The message unchanged.
        """
        prefix = self._log_prefix(message)
        logger.debug(f"{prefix}Sending task '{message.task_name}' (id={message.task_id})")
        return message

    async def post_execute(self, message: TaskiqMessage, result: TaskiqResult[Any]) -> None:
        """Log after task execution completes.

        Args:
            message: The executed task message.
            result: The task execution result.
        """
        prefix = self._log_prefix(message)

        if result.is_err:
            error = result.error
            detail = getattr(error, "detail", None)
            detail_suffix = f" (detail: {detail})" if detail is not None else ""
            logger.error(
                f"{prefix}Task '{message.task_name}' (id={message.task_id}) "
                f"failed: {error}{detail_suffix}"
            )
        else:
            logger.info(
                f"{prefix}Task '{message.task_name}' (id={message.task_id}) "
                f"completed in {result.execution_time:.3f}s"
            )


class ContractMiddleware(TaskiqMiddleware):
    """Checks stage messages against their contracts on both sides of a task.

    ``pre_execute`` validates the consumed message against the stage's input
    schema. ``post_execute`` runs the full outbound flow (validation, tracking,
    integrity, status rules) on the task's return value and records the
    resulting action in the ``contract_action`` label:

    - ``forward``: StageChainMiddleware dispatches the next stage,
    - ``reject``: the result is published to the dead letter queue,
    - ``quarantine``: the result is published to the quarantine queue.

    Args:
        context: Contract context to use. If not provided, one is built from
            settings during ``startup()``.
        amqp_url: Optional AMQP URL override for quarantine/DLQ publishing.
    """

    def __init__(self, context: ContractContext | None = None, amqp_url: str | None = None) -> None:
        super().__init__()
        self.context = context
        self._publisher = _AmqpPublisher(amqp_url, (QUARANTINE_QUEUE, DLQ_QUEUE))
        # task_id -> consumed wire message, kept until post_execute
        self._inbound: dict[str, Any] = {}
        # task ids whose consumed message was rejected in pre_execute
        self._rejected: set[str] = set()

    async def startup(self) -> None:
        """Build the contract context and open the side-queue connection."""
        if self.context is None:
            self.context = ContractContext.from_settings()
        await self._publisher.connect()

    async def shutdown(self) -> None:
        """Close the side-queue connection."""
        await self._publisher.close()

    def _get_context(self) -> ContractContext:
        if self.context is None:
            self.context = ContractContext.from_settings()
        return self.context

    async def pre_execute(self, message: TaskiqMessage) -> TaskiqMessage:
        """Validate the consumed message before the stage runs.

        A consumed message that violates the stage's input contract is
        published to the dead letter queue and replaced by a rejection
        marker, so the stage task returns without running its handler and
        nothing is dispatched downstream.

        Args:
            message: The task message about to execute.

        Returns:
            The message, with its payload replaced when it was rejected.
        """
        stage = _stage_of(message)
        if stage is None:
            return message

        consumed = _as_wire(_first_arg(message))
        report = self._get_context().check_inbound(consumed, stage)
        if report.accepted:
            self._inbound[message.task_id] = consumed
            return message

        logger.warning(
            f"{report.log_prefix}Stage '{stage.value}' consumed a message that violates "
            f"its input contract ({len(report.violations)} violation(s)), sent to DLQ"
        )
        await self._publisher.publish(DLQ_QUEUE, self._record(message, consumed, report))
        self._rejected.add(message.task_id)
        message.labels[CONTRACT_ACTION_LABEL] = report.action.value
        message.args = [{REJECTED_INPUT_KEY: True}, *message.args[1:]]
        return message

    async def post_execute(self, message: TaskiqMessage, result: TaskiqResult[Any]) -> None:
        """Check the produced message and decide where it goes.

        Args:
            message: The executed task message.
            result: The task execution result.
        """
        consumed = self._inbound.pop(message.task_id, None)
        if message.task_id in self._rejected:
            self._rejected.discard(message.task_id)
            return
        stage = _stage_of(message)
        if stage is None or result.is_err:
            return

        produced = _as_wire(result.return_value)
        upstream = consumed if isinstance(consumed, Mapping) else None
        report = self._get_context().check_outbound(produced, stage, upstream=upstream)
        message.labels[CONTRACT_ACTION_LABEL] = report.action.value

        if report.action is BoundaryAction.quarantine:
            await self._publisher.publish(QUARANTINE_QUEUE, self._record(message, produced, report))
            logger.error(f"{report.log_prefix}Stage '{stage.value}' result quarantined")
        elif report.action is BoundaryAction.reject:
            await self._publisher.publish(DLQ_QUEUE, self._record(message, produced, report))
            logger.warning(f"{report.log_prefix}Stage '{stage.value}' result rejected, sent to DLQ")

    @staticmethod
    def _record(message: TaskiqMessage, produced: Any, report: BoundaryReport) -> dict[str, Any]:
        return {
            "task_name": message.task_name,
            "task_id": message.task_id,
            "labels": message.labels,
            "stage": report.stage.value,
            "direction": report.direction,
            "correlation_id": report.correlation_id,
            "message_id": report.message_id,
            "action": report.action.value,
            "error_type": "contract_violation",
            "violations": [
                {"field": v.field, "kind": v.kind.value, "reason": v.reason}
                for v in report.violations
            ],
            "findings": [
                {"kind": f.kind.value, "severity": f.severity.value, "detail": f.detail}
                for f in report.findings
            ],
            "error": str(report.transition_error) if report.transition_error else None,
            "message": produced,
        }


class StageChainMiddleware(TaskiqMiddleware):
    """Dispatches each accepted stage result to the next stage's task.

    Failed messages are forwarded like any other accepted result; the next
    stage passes them through. Results the ContractMiddleware did not accept
    are not dispatched.
    """

    async def post_execute(self, message: TaskiqMessage, result: TaskiqResult[Any]) -> None:
        """After a stage completes, dispatch the next stage.

        Args:
            message: The completed task message.
            result: The task execution result.
        """
        stage = _stage_of(message)
        if stage is None or result.is_err:
            return

        action = message.labels.get(CONTRACT_ACTION_LABEL, BoundaryAction.forward.value)
        if action != BoundaryAction.forward.value:
            logger.debug(f"Stage '{stage.value}' result not forwarded (contract action: {action})")
            return

        next_stage = stage.next
        correlation_id = message.labels.get("correlation_id", "?")
        if next_stage is None:
            logger.info(f"[correlation={correlation_id}] Pipeline finished all stages")
            return

        from .chain import get_stage_task, stage_labels

        task = get_stage_task(next_stage)
        if task is None:
            logger.error(
                f"[correlation={correlation_id}] No task registered for stage "
                f"'{next_stage.value}'; chain stopped after '{stage.value}'"
            )
            return

        try:
            produced = result.return_value
            msg = (
                produced
                if isinstance(produced, PipelineMessage)
                else PipelineMessage.from_wire(produced)
            )
        except Exception as e:
            logger.error(
                f"[correlation={correlation_id}] Cannot decode '{stage.value}' result "
                f"for dispatch: {e}"
            )
            return

        try:
            await task.kicker().with_labels(**stage_labels(next_stage, msg)).kiq(msg.to_wire())
            logger.debug(
                f"[correlation={msg.correlation_id} message={msg.message_id}] "
                f"Dispatched to '{next_stage.value}' ('{task.task_name}')"
            )
        except Exception as e:
            logger.error(
                f"[correlation={msg.correlation_id}] Dispatch to '{next_stage.value}' failed: {e}"
            )


class DeadLetterMiddleware(TaskiqMiddleware):
    """Routes permanently failed tasks to the dead letter queue.

    SmartRetryMiddleware sets result.error = NoResultError() when scheduling
    a retry. If post_execute sees a real error (not NoResultError), it means
    retries are exhausted or disabled, so route to DLQ.

    Args:
        amqp_url: Optional AMQP URL override. Falls back to ``_build_amqp_url()``
            when not provided (production default).
    """

    def __init__(self, amqp_url: str | None = None) -> None:
        super().__init__()
        self._publisher = _AmqpPublisher(amqp_url, (DLQ_QUEUE,))

    async def startup(self) -> None:
        """Open a persistent AMQP connection and declare the DLQ."""
        await self._publisher.connect()

    async def shutdown(self) -> None:
        """Close the persistent AMQP connection."""
        await self._publisher.close()

    async def post_execute(self, message: TaskiqMessage, result: TaskiqResult[Any]) -> None:
        """Check if a failed task should be routed to the DLQ.

        Args:
            message: The executed task message.
            result: The task execution result.
        """
        if not result.is_err:
            return

        # SmartRetryMiddleware replaces error with NoResultError on retry
        from taskiq.exceptions import NoResultError

        if isinstance(result.error, NoResultError):
            return  # retry scheduled, skip DLQ

        await self._publish_to_dlq(message, result)

    async def _publish_to_dlq(self, message: TaskiqMessage, result: TaskiqResult[Any]) -> None:
        """Publish failed message to the dead letter queue.

        Args:
            message: The failed task message.
            result: The task execution result with error.
        """
        error = result.error
        dlq_payload: dict[str, Any] = {
            "task_name": message.task_name,
            "task_id": message.task_id,
            "args": message.args,
            "kwargs": message.kwargs,
            "labels": message.labels,
            "error": str(error),
            "error_type": type(error).__name__ if error else None,
            "error_detail": getattr(error, "detail", None),
        }
        if await self._publisher.publish(DLQ_QUEUE, dlq_payload):
            logger.warning(
                f"Task '{message.task_name}' (id={message.task_id}) "
                f"sent to dead letter queue: {result.error}"
            )
