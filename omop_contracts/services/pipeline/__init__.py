"""
Stage services on TaskIQ with contract checks at every hop.

Provides a TaskIQ-based task queue whose middlewares run the contract engine
on each consumed and produced message, chain accepted results to the next
stage, and route rejected or quarantined messages to side queues.

Example:
    from omop_contracts.services.pipeline import StagePipeline, contract_stage, get_broker

    broker = get_broker()

    @broker.task(task_name="preprocess_document")
    @contract_stage("preprocessing")
    async def preprocess_document(upstream):
        return {"preprocessed_text": upstream.raw_text.strip()}

    omop_pipeline = (
        StagePipeline()
        .stage("preprocessing", preprocess_document)
        .stage("chunking", chunk_document)
        .stage("entity_extraction", extract_entities)
        .stage("standardization", standardize_terms)
    )

    await omop_pipeline.run(PipelineMessage(correlation_id="corr-001", ...))
"""

from .broker import (
    CHUNKING_QUEUE,
    DLQ_QUEUE,
    ENTITY_EXTRACTION_QUEUE,
    PREPROCESSING_QUEUE,
    QUARANTINE_QUEUE,
    STAGE_QUEUES,
    STANDARDIZATION_QUEUE,
    create_broker,
    extract_routing_key,
    get_broker,
    get_contract_context,
    get_test_broker,
    queue_for_stage,
)
from .chain import (
    StagePipeline,
    contract_stage,
    get_stage_task,
    get_stage_tasks,
    register_stage_task,
    stage_labels,
)
from .middleware import (
    CONTRACT_ACTION_LABEL,
    ContractMiddleware,
    DeadLetterMiddleware,
    PipelineLoggingMiddleware,
    StageChainMiddleware,
)
from .worker import build_worker_brokers, get_worker_queues, run_worker

__all__ = [
    "CHUNKING_QUEUE",
    "CONTRACT_ACTION_LABEL",
    "DLQ_QUEUE",
    "ENTITY_EXTRACTION_QUEUE",
    "PREPROCESSING_QUEUE",
    "QUARANTINE_QUEUE",
    "STAGE_QUEUES",
    "STANDARDIZATION_QUEUE",
    "ContractMiddleware",
    "DeadLetterMiddleware",
    "PipelineLoggingMiddleware",
    "StageChainMiddleware",
    "StagePipeline",
    "build_worker_brokers",
    "contract_stage",
    "create_broker",
    "extract_routing_key",
    "get_broker",
    "get_contract_context",
    "get_stage_task",
    "get_stage_tasks",
    "get_test_broker",
    "get_worker_queues",
    "queue_for_stage",
    "register_stage_task",
    "run_worker",
    "stage_labels",
]
