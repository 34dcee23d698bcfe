"""
Worker queue selection and startup utilities.

Determines which stage queues a worker consumes from ``settings.worker_stages``
and runs one TaskIQ receiver per queue.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from omop_contracts.models import STAGE_ORDER
from omop_contracts.settings import settings
from omop_contracts.utils.logger import logger

from .broker import PREPROCESSING_QUEUE, queue_for_stage

if TYPE_CHECKING:
    from taskiq import AsyncBroker


def get_worker_queues() -> list[str]:
    """Select the stage queues this worker should consume from.

    A worker runs the stages listed in ``settings.worker_stages``, or all
    four stages when the list is empty.

    Returns:
        List of queue names in pipeline order.

    Raises:
        UnknownStageError: If the settings name a stage that does not exist.
    """
    if not settings.worker_stages:
        return [queue_for_stage(stage) for stage in STAGE_ORDER]

    queues = [queue_for_stage(stage) for stage in settings.worker_stages]
    logger.info(f"Worker restricted to stages: {settings.worker_stages}")
    return list(dict.fromkeys(queues))


def _load_task_modules() -> None:
    """Import the modules that define stage tasks.

    Importing a module from ``settings.pipeline_task_modules`` runs its
    ``@broker.task()`` decorators, which populate the singleton broker's
    task registry, and its ``StagePipeline`` wiring.
    """
    import importlib

    for module_name in settings.pipeline_task_modules:
        try:
            importlib.import_module(module_name)
            logger.info(f"Loaded stage tasks from '{module_name}'")
        except ImportError as e:
            logger.error(f"Failed to load stage tasks from '{module_name}': {e}")


def build_worker_brokers(queues: list[str]) -> list[AsyncBroker]:
    """Create one broker per queue, all sharing the singleton's tasks and contract context.

    The preprocessing queue is served by the singleton broker the task modules
    registered on; every other queue gets a broker bound to its routing key
    with a copy of the singleton's task registry.

    Args:
        queues: Queue names to listen on.

    Returns:
        Brokers in the order of ``queues``.
    """
    from .broker import create_broker, get_broker, get_contract_context

    context = get_contract_context()
    singleton = get_broker()

    brokers: list[AsyncBroker] = []
    for queue_name in queues:
        if queue_name == PREPROCESSING_QUEUE:
            brokers.append(singleton)
            continue
        qbroker = create_broker(queue_name, context=context)
        for task_name, task in singleton.get_all_tasks().items():
            qbroker.local_task_registry[task_name] = task
        brokers.append(qbroker)
    return brokers


async def run_worker(
    queues: list[str] | None = None,
    workers: int = 2,
) -> None:
    """Start a TaskIQ worker process for the given stage queues.

    Loads task modules to register handlers on the singleton broker,
    then starts broker instances for each queue.

    Args:
        queues: Queue names to listen on (from settings if None).
        workers: Number of concurrent worker tasks per queue.
    """
    import asyncio
    import signal

    from .broker import get_broker

    _load_task_modules()

    if queues is None:
        queues = get_worker_queues()

    logger.info(f"Starting stage worker on queues: {queues} (workers={workers})")

    singleton = get_broker()
    brokers = build_worker_brokers(queues)

    from taskiq.acks import AcknowledgeType
    from taskiq.api.receiver import run_receiver_task

    ack_types = {
        "when_received": AcknowledgeType.WHEN_RECEIVED,
        "when_executed": AcknowledgeType.WHEN_EXECUTED,
        "when_saved": AcknowledgeType.WHEN_SAVED,
    }
    ack_type = ack_types.get(settings.pipeline_ack_type, AcknowledgeType.WHEN_EXECUTED)

    receiver_tasks: list[asyncio.Task[None]] = []
    for broker in brokers:
        broker.is_worker_process = True
        await broker.startup()
        receiver_tasks.append(
            asyncio.create_task(
                run_receiver_task(
                    broker,
                    max_async_tasks=workers,
                    run_startup=False,
                    ack_time=ack_type,
                )
            )
        )

    logger.info(f"Stage worker started, listening on {len(brokers)} queue(s)")
    logger.info(f"Registered tasks: {list(singleton.get_all_tasks().keys())}")

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    try:
        await shutdown_event.wait()
    finally:
        for receiver_task in receiver_tasks:
            receiver_task.cancel()
        for broker in brokers:
            await broker.shutdown()
        logger.info("Stage worker stopped")
