"""
TaskIQ broker configuration for the OMOP stage services.

Provides AioPikaBroker instances with SmartRetryMiddleware, contract checks,
a quarantine queue and a dead letter queue.
Uses RabbitMQ settings from omop_contracts.settings.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from omop_contracts.models import PipelineStage
from omop_contracts.services.contracts.registry import coerce_stage
from omop_contracts.settings import settings
from omop_contracts.utils.logger import logger

if TYPE_CHECKING:
    from taskiq import AsyncBroker

    from omop_contracts.services.contracts import ContractContext

# Module-level broker reference, initialized lazily
_broker: AsyncBroker | None = None

# Contract context shared by every broker of the process, initialized lazily
_context: ContractContext | None = None

QUEUE_PREFIX = "omop"

# Messages with illegal status transitions
QUARANTINE_QUEUE = "omop.quarantine"

# Tasks that failed after all retries
DLQ_QUEUE = "omop.dead_letter"

# One input queue per stage
PREPROCESSING_QUEUE = "omop.preprocessing"
CHUNKING_QUEUE = "omop.chunking"
ENTITY_EXTRACTION_QUEUE = "omop.entity_extraction"
STANDARDIZATION_QUEUE = "omop.standardization"

STAGE_QUEUES: dict[PipelineStage, str] = {
    PipelineStage.preprocessing: PREPROCESSING_QUEUE,
    PipelineStage.chunking: CHUNKING_QUEUE,
    PipelineStage.entity_extraction: ENTITY_EXTRACTION_QUEUE,
    PipelineStage.standardization: STANDARDIZATION_QUEUE,
}


def queue_for_stage(stage: PipelineStage | str) -> str:
    """Get the input queue of a stage.

    Raises:
        UnknownStageError: If the stage does not exist.
    """
    return STAGE_QUEUES[coerce_stage(stage)]


def _build_amqp_url() -> str:
    """Build AMQP connection URL from settings.

    Returns:
        AMQP URL string.
    """
    return settings.amqp_url


def extract_routing_key(queue_name: str) -> str:
    """Extract routing key from a queue name.

    Example: ``"omop.chunking"`` -> ``"chunking"``

    Args:
        queue_name: Full queue name.

    Returns:
        The routing key (last segment after the final dot).
    """
    return queue_name.rsplit(".", maxsplit=1)[-1]


def create_broker(
    queue_name: str = PREPROCESSING_QUEUE,
    context: ContractContext | None = None,
) -> AsyncBroker:
    """Create a TaskIQ broker for a specific queue.

    All brokers share the same direct exchange (``settings.rabbitmq_exchange``).
    Each queue binds to a routing key matching its suffix
    (e.g. ``omop.chunking`` binds to routing key ``chunking``).

    Args:
        queue_name: Queue name to bind (default: ``omop.preprocessing``).
        context: Contract context for the broker's middlewares (default: the
            process-wide context from ``get_contract_context()``).

    Returns:
        Configured AioPikaBroker instance.
    """
    from taskiq_aio_pika import AioPikaBroker

    routing_key = extract_routing_key(queue_name)

    broker_kwargs: dict[str, object] = {
        "url": _build_amqp_url(),
        "exchange_name": settings.rabbitmq_exchange,
        "exchange_type": "direct",
        "queue_name": queue_name,
        "routing_key": routing_key,
        "declare_exchange": True,
        "declare_queues": True,
    }

    broker = AioPikaBroker(**broker_kwargs)  # type: ignore[arg-type]

    from taskiq.middlewares import SmartRetryMiddleware

    from .middleware import (
        ContractMiddleware,
        DeadLetterMiddleware,
        PipelineLoggingMiddleware,
        StageChainMiddleware,
    )

    broker = broker.with_middlewares(
        SmartRetryMiddleware(
            default_retry_count=settings.pipeline_retry_count,
            default_retry_label=True,
            default_delay=settings.pipeline_retry_delay,
            use_jitter=True,
            use_delay_exponent=True,
            max_delay_exponent=settings.pipeline_retry_max_delay,
        ),
        PipelineLoggingMiddleware(),
        ContractMiddleware(context=context or get_contract_context()),
        DeadLetterMiddleware(),
        StageChainMiddleware(),
    )

    if settings.pipeline_result_backend_url:
        try:
            from taskiq_redis import RedisAsyncResultBackend

            backend = RedisAsyncResultBackend(settings.pipeline_result_backend_url)
            broker = broker.with_result_backend(backend)
            logger.debug("Pipeline result backend configured: Redis")
        except ImportError:
            logger.warning(
                "taskiq-redis not installed; pipeline result backend disabled. "
                "Install with: pip install taskiq-redis"
            )

    logger.debug(f"Created pipeline broker for queue '{queue_name}' (routing_key='{routing_key}')")
    return broker


def get_broker() -> AsyncBroker:
    """Get or create the default pipeline broker singleton.

    Returns:
        The broker bound to the preprocessing queue.
    """
    global _broker
    if _broker is None:
        _broker = create_broker(PREPROCESSING_QUEUE)
    return _broker


def get_test_broker() -> AsyncBroker:
    """Create an InMemoryBroker for testing.

    Returns:
        InMemoryBroker with tasks executed in-place.
    """
    from taskiq import InMemoryBroker

    return InMemoryBroker()


def get_contract_context() -> ContractContext:
    """Get or create the contract context shared by every broker of the process.

    All stage brokers of one worker must observe messages through the same
    CorrelationTracker, otherwise each stage sees its predecessor as skipped.

    Returns:
        The process-wide ContractContext, built from settings.
    """
    global _context
    if _context is None:
        from omop_contracts.services.contracts import ContractContext

        _context = ContractContext.from_settings()
    return _context
