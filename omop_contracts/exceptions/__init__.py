from .domain import (
    ConfigurationError,
    ContractError,
    IllegalTransitionError,
    PipelineConfigError,
    PipelineError,
    PipelineStepError,
    UnknownStageError,
)

__all__ = [
    "ConfigurationError",
    "ContractError",
    "IllegalTransitionError",
    "PipelineConfigError",
    "PipelineError",
    "PipelineStepError",
    "UnknownStageError",
]
