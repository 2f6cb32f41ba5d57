from .config import DEFAULT_CHALLENGE, OrchestratorConfig
from .locks import KeyedLockTable
from .pipeline import CapsuleLifecycleOrchestrator, PipelineAttempt, validate_create_request
from .registry import CapsuleRegistry

__all__ = [
    "CapsuleLifecycleOrchestrator",
    "CapsuleRegistry",
    "DEFAULT_CHALLENGE",
    "KeyedLockTable",
    "OrchestratorConfig",
    "PipelineAttempt",
    "validate_create_request",
]
