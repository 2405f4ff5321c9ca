"""Per-application wiring of the orchestrator and its collaborators."""
from __future__ import annotations

from flask import current_app

from ..storage import LocalObjectStore, RecordStore
from .conversation import ConversationManager
from .engines import EngineRegistry
from .orchestrator import GenerationOrchestrator
from .projects import ProjectRepository
from .providers import ImageGenerationClient, ProviderCredentials, TextGenerationClient
from .rasterizer import PdfCoRasterizer


def build_orchestrator(config, registry: EngineRegistry | None = None) -> GenerationOrchestrator:
    timeout = float(config.get("PROVIDER_TIMEOUT_SECONDS") or 120.0)
    credentials = ProviderCredentials.from_config(config)
    records = RecordStore()

    rasterizer = None
    if config.get("PDFCO_API_KEY"):
        rasterizer = PdfCoRasterizer(
            config["PDFCO_API_KEY"],
            timeout=float(config.get("RASTERIZER_TIMEOUT_SECONDS") or 60.0),
        )

    return GenerationOrchestrator(
        registry or EngineRegistry(),
        TextGenerationClient.from_credentials(credentials, timeout=timeout),
        ImageGenerationClient.from_credentials(credentials, timeout=timeout),
        ProjectRepository(records),
        LocalObjectStore(config["MEDIA_ROOT"], config.get("MEDIA_URL_PREFIX") or "/media"),
        ConversationManager(records, window=int(config.get("CHAT_HISTORY_WINDOW") or 40)),
        rasterizer=rasterizer,
        public_base_url=config.get("PUBLIC_BASE_URL"),
        excerpt_chars=config.get("SCRIPT_EXCERPT_CHARS"),
        canon_script_chars=config.get("CANON_SCRIPT_CHARS"),
        timeout=timeout,
    )


def get_orchestrator() -> GenerationOrchestrator:
    app = current_app
    if "_ORCHESTRATOR_INSTANCE" in app.config:
        return app.config["_ORCHESTRATOR_INSTANCE"]

    app.logger.info(
        "Initialising generation orchestrator (openai=%s, gemini=%s, pdfco=%s)",
        bool(app.config.get("OPENAI_API_KEY")),
        bool(app.config.get("GEMINI_API_KEY")),
        bool(app.config.get("PDFCO_API_KEY")),
    )
    orchestrator = build_orchestrator(app.config)
    app.config["_ORCHESTRATOR_INSTANCE"] = orchestrator
    return orchestrator


def close_orchestrator(app) -> None:
    orchestrator = app.config.pop("_ORCHESTRATOR_INSTANCE", None)
    if orchestrator is not None:
        orchestrator.close()


__all__ = ["build_orchestrator", "close_orchestrator", "get_orchestrator"]
