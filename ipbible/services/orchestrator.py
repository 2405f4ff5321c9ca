"""Generation orchestrator: the entry points the API layer calls.

The orchestrator owns no state of its own. Engines, provider clients, the
record and object stores and the conversation manager are handed in by the
caller, which keeps every collaborator replaceable in tests.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from flask import current_app

from ..storage import LocalObjectStore, ObjectStoreError, mint_key
from .canon import StructuredCanon, extract_json, slugify
from .conversation import ConversationManager
from .engines import (
    CAPABILITY_IMAGE,
    CAPABILITY_TEXT,
    EngineRegistry,
    EngineSelection,
    ProjectEngineConfig,
    ensure_project_engine_config,
    merge_engine_config,
    select_engine,
)
from .errors import GenerationCancelled, GenerationError
from .projects import (
    ENTITY_KINDS,
    EntityImageRecord,
    HeroRecord,
    ProjectRepository,
    utc_timestamp,
)
from .prompt_composer import (
    build_entity_image_prompt,
    build_extraction_messages,
    build_hero_prompt,
    compose_chat_messages,
    sanitize_new_turn,
)
from .providers import CallOptions, ImageGenerationClient, TextGenerationClient
from .rasterizer import RasterizationError

IMAGE_SIZE = "1024x1024"


class ChatRequestError(ValueError):
    """Raised when a chat request carries nothing the model can answer."""


def normalize_mode(mode: Optional[str]) -> str:
    return "canon" if (mode or "").strip().lower() == "canon" else "copilot"


@dataclass
class ChatResult:
    project_id: str
    mode: str
    engine_id: str
    reply: str
    history: List[Dict[str, Any]] = field(default_factory=list)
    engine_substituted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "projectId": self.project_id,
            "mode": self.mode,
            "engineId": self.engine_id,
            "reply": self.reply,
            "history": list(self.history),
        }


class GenerationOrchestrator:
    def __init__(
        self,
        registry: EngineRegistry,
        text_client: TextGenerationClient,
        image_client: ImageGenerationClient,
        projects: ProjectRepository,
        objects: LocalObjectStore,
        conversations: ConversationManager,
        *,
        rasterizer: Any = None,
        public_base_url: Optional[str] = None,
        excerpt_chars: Optional[int] = None,
        canon_script_chars: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.registry = registry
        self.text_client = text_client
        self.image_client = image_client
        self.projects = projects
        self.objects = objects
        self.conversations = conversations
        self.rasterizer = rasterizer
        self.public_base_url = (public_base_url or "").rstrip("/") or None
        self.excerpt_chars = excerpt_chars
        self.canon_script_chars = canon_script_chars
        self.timeout = timeout

    def close(self) -> None:
        """Release the HTTP clients held by the provider and rasterizer collaborators."""

        for collaborator in (self.text_client, self.image_client, self.rasterizer):
            close = getattr(collaborator, "close", None)
            if callable(close):
                close()

    def _options(self, options: Optional[CallOptions]) -> CallOptions:
        if options is not None:
            return options
        return CallOptions(timeout=self.timeout)

    # ---------------- engines ----------------
    def resolve_engine(self, engine_id: Optional[str], capability: str = CAPABILITY_TEXT) -> EngineSelection:
        return select_engine(self.registry, engine_id, capability)

    def ensure_project_engine_config(self, partial: Any) -> ProjectEngineConfig:
        return ensure_project_engine_config(partial, default_engine_id=self.registry.default_for(CAPABILITY_TEXT))

    def project_engines(self, project_id: str) -> ProjectEngineConfig:
        # Projects without a stored config fall back to the registry defaults.
        return self.ensure_project_engine_config(self.projects.load_engine_config(project_id))

    def update_project_engines(self, project_id: str, changes: Mapping[str, Any]) -> ProjectEngineConfig:
        merged = merge_engine_config(self.projects.load_engine_config(project_id), changes, self.registry)
        self.projects.save_engine_config(project_id, merged)
        return self.ensure_project_engine_config(merged)

    # ---------------- canon ----------------
    def extract_canon(
        self,
        script_text: str,
        engine_id: Optional[str] = None,
        *,
        options: Optional[CallOptions] = None,
    ) -> StructuredCanon:
        selection = self.resolve_engine(engine_id, CAPABILITY_TEXT)
        binding = selection.binding
        messages = build_extraction_messages(script_text, self.canon_script_chars)
        raw = self.text_client.send_chat(binding.provider, binding.model, messages, self._options(options))
        canon = extract_json(raw, StructuredCanon.from_dict)
        current_app.logger.info(
            "Extracted canon with %s: %d characters, %d locations",
            selection.engine_id,
            len(canon.characters.entries),
            len(canon.locations.entries),
        )
        return canon

    # ---------------- chat ----------------
    def chat(
        self,
        project_id: str,
        mode: Optional[str],
        new_messages: Iterable[Any],
        *,
        engine_id: Optional[str] = None,
        options: Optional[CallOptions] = None,
    ) -> ChatResult:
        mode = normalize_mode(mode)
        turn = sanitize_new_turn(new_messages)
        if not turn:
            raise ChatRequestError("No messages provided.")

        canon = self.projects.load_canon(project_id)
        script = self.projects.load_script(project_id)
        engines = self.project_engines(project_id)
        selection = self.resolve_engine(engine_id or engines.engine_for_mode(mode), CAPABILITY_TEXT)
        binding = selection.binding
        call_options = self._options(options)

        def reply_fn(log: List[Any]) -> str:
            messages = compose_chat_messages(
                canon,
                mode,
                log,
                turn,
                script=script,
                window=self.conversations.window_size,
                excerpt_limit=self.excerpt_chars,
            )
            return self.text_client.send_chat(binding.provider, binding.model, messages, call_options)

        result = self.conversations.run_turn(project_id, mode, turn, reply_fn)
        return ChatResult(
            project_id=project_id,
            mode=mode,
            engine_id=selection.engine_id,
            reply=result.reply,
            history=result.history,
            engine_substituted=selection.substituted,
        )

    def list_history(self, project_id: str, mode: Optional[str]) -> List[Any]:
        return self.conversations.history(project_id, normalize_mode(mode))

    # ---------------- hero ----------------
    def generate_hero(
        self,
        canon: Any,
        project_id: str,
        file_kind: Optional[str] = None,
        raw_file_bytes: Optional[bytes] = None,
        image_engine_id: Optional[str] = None,
        *,
        options: Optional[CallOptions] = None,
        persist: bool = True,
    ) -> Optional[HeroRecord]:
        """Produce a hero image, preferring the uploaded PDF's first page.

        Failures never propagate: a missing hero is an acceptable outcome, so
        each step logs and falls through. Returns ``None`` if nothing worked.
        """

        hero: Optional[HeroRecord] = None
        if file_kind == "pdf" and raw_file_bytes:
            hero = self._hero_from_pdf(project_id, raw_file_bytes)

        if hero is None:
            try:
                hero = self._hero_from_ai(canon, project_id, image_engine_id, self._options(options))
            except GenerationCancelled:
                raise
            except (GenerationError, ObjectStoreError) as exc:
                current_app.logger.warning("AI hero generation failed for project %s: %s", project_id, exc)
                hero = None

        if hero is not None and persist:
            self.projects.save_hero(project_id, hero)
        return hero

    def _public_url(self, url: str) -> str:
        if url.startswith(("http://", "https://")):
            return url
        if not self.public_base_url:
            raise RasterizationError("PUBLIC_BASE_URL is not configured; the PDF is not publicly reachable.")
        return f"{self.public_base_url}{url}"

    def _hero_from_pdf(self, project_id: str, pdf_bytes: bytes) -> Optional[HeroRecord]:
        if self.rasterizer is None:
            current_app.logger.warning("No PDF rasterizer configured; skipping PDF hero extraction.")
            return None
        try:
            source_url = self.objects.put(
                mint_key(f"projects/{project_id}/source", "pdf", "pdf"),
                pdf_bytes,
                content_type="application/pdf",
            )
            image_url = self.rasterizer.rasterize(self._public_url(source_url), "1")
            image_bytes = self.rasterizer.fetch_image(image_url)
            url = self.objects.put(
                mint_key(f"projects/{project_id}/hero", "pdf-hero"),
                image_bytes,
                content_type="image/png",
            )
        except Exception as exc:
            current_app.logger.warning("PDF hero extraction failed for project %s: %s", project_id, exc)
            return None
        current_app.logger.info("Stored PDF hero for project %s at %s", project_id, url)
        return HeroRecord(url=url, source="pdf")

    def _hero_from_ai(
        self,
        canon: Any,
        project_id: str,
        image_engine_id: Optional[str],
        options: CallOptions,
    ) -> HeroRecord:
        selection = self.resolve_engine(image_engine_id, CAPABILITY_IMAGE)
        binding = selection.binding
        image = self.image_client.generate_image(
            binding.provider, binding.model, build_hero_prompt(canon), IMAGE_SIZE, options
        )
        url = self.objects.put(
            mint_key(f"projects/{project_id}/hero", "ai-hero", image.extension),
            image.data,
            content_type=image.mime_type,
        )
        current_app.logger.info("Stored AI hero for project %s generated with %s", project_id, selection.engine_id)
        return HeroRecord(url=url, source="ai", engine_id=selection.engine_id)

    # ---------------- entity images ----------------
    def generate_entity_image(
        self,
        project_id: str,
        kind: str,
        entity_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        engine_id: Optional[str] = None,
        options: Optional[CallOptions] = None,
    ) -> EntityImageRecord:
        if kind not in ENTITY_KINDS:
            raise ValueError(f"Unsupported entity kind: {kind!r}")
        requested = engine_id or self.project_engines(project_id).image_engine_id
        selection = self.resolve_engine(requested, CAPABILITY_IMAGE)
        binding = selection.binding

        prompt = build_entity_image_prompt(kind, name, description)
        image = self.image_client.generate_image(
            binding.provider, binding.model, prompt, IMAGE_SIZE, self._options(options)
        )
        key = mint_key(f"projects/{project_id}/{kind}s", slugify(entity_id) or kind, image.extension)
        url = self.objects.put(key, image.data, content_type=image.mime_type)

        record = EntityImageRecord(
            url=url,
            engine_id=selection.engine_id,
            project_id=project_id,
            kind=kind,
            entity_id=entity_id,
            created_at=utc_timestamp(),
        )
        self.projects.save_entity_image(record)
        current_app.logger.info("Generated %s image for %s/%s with %s", kind, project_id, entity_id, selection.engine_id)
        return record

    def upload_entity_image(
        self,
        project_id: str,
        kind: str,
        entity_key: str,
        data: bytes,
        content_type: Optional[str] = None,
    ) -> str:
        if kind not in ENTITY_KINDS:
            raise ValueError(f"Unsupported entity kind: {kind!r}")
        content_type = content_type or "image/png"
        extension = "jpg" if "jpeg" in content_type else "png"
        key = mint_key(f"projects/{project_id}/{kind}s", slugify(entity_key) or kind, extension)
        url = self.objects.put(key, data, content_type=content_type)
        self.projects.set_entity_image_url(project_id, kind, entity_key, url)
        return url


__all__ = ["ChatRequestError", "ChatResult", "GenerationOrchestrator", "IMAGE_SIZE", "normalize_mode"]
