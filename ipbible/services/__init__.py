"""Service layer for canon extraction, canon chat and image generation."""

from __future__ import annotations

from .canon import StructuredCanon, extract_json  # noqa: F401
from .engines import (  # noqa: F401
    ENGINE_CATALOG,
    EngineRegistry,
    ProjectEngineConfig,
    ensure_project_engine_config,
    select_engine,
)
from .errors import GenerationError  # noqa: F401
from .orchestrator import ChatResult, GenerationOrchestrator  # noqa: F401

__all__ = [
    "ChatResult",
    "ENGINE_CATALOG",
    "EngineRegistry",
    "GenerationError",
    "GenerationOrchestrator",
    "ProjectEngineConfig",
    "StructuredCanon",
    "ensure_project_engine_config",
    "extract_json",
    "select_engine",
]
