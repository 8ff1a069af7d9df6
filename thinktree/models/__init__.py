"""Inference client and persistence."""

from .llm_client import InferenceResult, InferenceService, LLMClient
from .thinking_store import ThinkingStore, validate_db_path

__all__ = [
    "InferenceResult",
    "InferenceService",
    "LLMClient",
    "ThinkingStore",
    "validate_db_path",
]
