"""
Stage chain builder and stage task wrapper.

StagePipeline binds one TaskIQ task to each of the four stages. Running a
document dispatches the preprocessing task; StageChainMiddleware then hands
every accepted result to the next stage's task.

Example:
    from omop_contracts.services.pipeline import StagePipeline, contract_stage

    @broker.task(task_name="preprocess_document")
    @contract_stage("preprocessing")
    async def preprocess_document(upstream):
        return {"preprocessed_text": clean(upstream.raw_text)}

    omop_pipeline = (
        StagePipeline()
        .stage("preprocessing", preprocess_document)
        .stage("chunking", chunk_document)
        .stage("entity_extraction", extract_entities)
        .stage("standardization", standardize_terms)
    )

    await omop_pipeline.run(document)
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any, TypeAlias

from omop_contracts.exceptions import PipelineConfigError, PipelineStepError
from omop_contracts.models import STAGE_ORDER, PipelineMessage, PipelineStage
from omop_contracts.services.contracts import StatusPropagator, coerce_stage, should_process
from omop_contracts.utils.logger import logger

from .broker import extract_routing_key, queue_for_stage
from .middleware import REJECTED_INPUT_KEY

if TYPE_CHECKING:
    from taskiq import AsyncTaskiqDecoratedTask

StageHandler: TypeAlias = Callable[[PipelineMessage], Mapping[str, Any] | Awaitable[Mapping[str, Any]]]

# Global registry: stage -> decorated task function
_STAGE_TASKS: dict[PipelineStage, AsyncTaskiqDecoratedTask[..., Any]] = {}


def register_stage_task(
    stage: PipelineStage | str, task: AsyncTaskiqDecoratedTask[..., Any]
) -> None:
    """Register the task that implements a stage.

    Called automatically by ``StagePipeline.stage()``.

    Args:
        stage: Pipeline stage.
        task: The TaskIQ decorated task function.
    """
    _STAGE_TASKS[coerce_stage(stage)] = task


def get_stage_task(stage: PipelineStage | str) -> AsyncTaskiqDecoratedTask[..., Any] | None:
    """Look up the task registered for a stage.

    Args:
        stage: Pipeline stage.

    Returns:
        The task, or None if the stage has no task registered.
    """
    return _STAGE_TASKS.get(coerce_stage(stage))


def get_stage_tasks() -> dict[PipelineStage, AsyncTaskiqDecoratedTask[..., Any]]:
    """Get all registered stage tasks."""
    return dict(_STAGE_TASKS)


def stage_labels(stage: PipelineStage, message: PipelineMessage) -> dict[str, str]:
    """Labels attached to a stage task so middlewares can route and trace it."""
    return {
        "stage": stage.value,
        "routing_key": extract_routing_key(queue_for_stage(stage)),
        "correlation_id": message.correlation_id,
    }


class StagePipeline:
    """Binds TaskIQ tasks to the four OMOP pipeline stages.

    Example:
        pipeline = StagePipeline().stage("preprocessing", preprocess_document)
    """

    def __init__(self) -> None:
        self.tasks: dict[PipelineStage, AsyncTaskiqDecoratedTask[..., Any]] = {}

    def stage(
        self, stage: PipelineStage | str, task: AsyncTaskiqDecoratedTask[..., Any]
    ) -> StagePipeline:
        """Bind a task to a stage.

        Args:
            stage: Stage the task implements.
            task: The TaskIQ decorated task function.

        Returns:
            Self for method chaining.
        """
        stage = coerce_stage(stage)
        self.tasks[stage] = task
        register_stage_task(stage, task)
        return self

    @property
    def missing_stages(self) -> list[PipelineStage]:
        return [stage for stage in STAGE_ORDER if stage not in self.tasks]

    async def run(self, document: PipelineMessage, **extra_labels: str) -> Any:
        """Submit an intake document to the preprocessing stage.

        Args:
            document: Intake message carrying ``raw_text``.
            **extra_labels: Additional labels to attach to the first task.

        Returns:
            The TaskIQ task handle for the preprocessing step.

        Raises:
            PipelineConfigError: If a stage has no task bound.
        """
        if self.missing_stages:
            missing = ", ".join(stage.value for stage in self.missing_stages)
            raise PipelineConfigError(f"No task bound for stage(s): {missing}")

        first = STAGE_ORDER[0]
        labels = {**stage_labels(first, document), **extra_labels}

        logger.info(
            f"[correlation={document.correlation_id} message={document.message_id}] "
            f"Submitting document to '{first.value}' on queue '{queue_for_stage(first)}'"
        )
        return await self.tasks[first].kicker().with_labels(**labels).kiq(document.to_wire())

    def __repr__(self) -> str:
        bound = {stage.value: task.task_name for stage, task in self.tasks.items()}
        return f"StagePipeline({bound})"


def contract_stage(
    stage: PipelineStage | str,
    propagator: StatusPropagator | None = None,
) -> Callable[[StageHandler], Callable[[dict[str, Any]], Awaitable[dict[str, Any] | None]]]:
    """Wrap a stage handler with the status lifecycle.

    The wrapped task takes the consumed wire message and returns the produced
    wire message:

    - a consumed message ContractMiddleware rejected is skipped (returns None),
    - failed messages are passed through without calling the handler,
    - otherwise a fresh message is derived, moved to ``processing``, and the
      handler's payload completes it,
    - PipelineStepError from the handler fails the message (with error
      metadata) instead of dropping it; other exceptions propagate so the
      broker can retry.

    Args:
        stage: Stage the handler implements.
        propagator: Status propagator (default: a fresh one).
    """
    stage = coerce_stage(stage)
    propagator = propagator or StatusPropagator()

    def decorator(
        handler: StageHandler,
    ) -> Callable[[dict[str, Any]], Awaitable[dict[str, Any] | None]]:
        async def run_stage(payload: dict[str, Any]) -> dict[str, Any] | None:
            if payload.get(REJECTED_INPUT_KEY):
                logger.warning(
                    f"'{stage.value}' skipped, consumed message violates its input contract"
                )
                return None

            upstream = PipelineMessage.from_wire(payload)
            prefix = f"[correlation={upstream.correlation_id} message={upstream.message_id}] "

            if not should_process(upstream):
                logger.info(f"{prefix}'{stage.value}' passing failed message through")
                return propagator.forward(upstream).to_wire()

            message = propagator.start(propagator.derive(upstream))
            try:
                result = handler(upstream)
                if inspect.isawaitable(result):
                    result = await result
            except PipelineStepError as e:
                logger.error(f"{prefix}'{stage.value}' failed: {e.detail}")
                failed = propagator.fail(message, kind=f"{stage.value}_error", description=e.detail)
                return failed.to_wire()

            return propagator.complete(message, **dict(result)).to_wire()

        run_stage.__name__ = getattr(handler, "__name__", run_stage.__name__)
        run_stage.__doc__ = handler.__doc__
        return run_stage

    return decorator
