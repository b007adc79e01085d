from mailflow.stages.base import (
    CampaignStage,
    StageCallable,
    StageDefinition,
    StageExecutor,
    describe_validation_error,
)

__all__ = [
    "CampaignStage",
    "StageCallable",
    "StageDefinition",
    "StageExecutor",
    "describe_validation_error",
]
