"""Engine registry: logical engine ids mapped to provider models.

An *engine* is a stable, user-facing identifier (``gemini-3-preview``) that
names one text model and/or one image model of a provider. The catalog is a
read-only table built at import time; :class:`EngineRegistry` wraps it and is
passed explicitly to the services that need it, so tests can substitute
their own catalog.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import CapabilityNotConfigured, EngineNotTextCapable, UnknownEngine

LOGGER = logging.getLogger(__name__)

PROVIDER_OPENAI = "openai"
PROVIDER_GEMINI = "gemini"

CAPABILITY_TEXT = "text"
CAPABILITY_IMAGE = "image"
CAPABILITIES = (CAPABILITY_TEXT, CAPABILITY_IMAGE)

KIND_TEXT = "text"
KIND_IMAGE = "image"
KIND_BOTH = "both"


@dataclass(frozen=True)
class ModelBinding:
    provider: str
    model: str


@dataclass(frozen=True)
class EngineDefinition:
    id: str
    label: str
    provider: str
    kind: str
    text: Optional[ModelBinding] = None
    image: Optional[ModelBinding] = None

    def binding_for(self, capability: str) -> Optional[ModelBinding]:
        if capability == CAPABILITY_TEXT:
            return self.text
        if capability == CAPABILITY_IMAGE:
            return self.image
        return None

    def supports(self, capability: str) -> bool:
        return self.binding_for(capability) is not None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "label": self.label,
            "provider": self.provider,
            "kind": self.kind,
        }
        for capability in CAPABILITIES:
            binding = self.binding_for(capability)
            if binding is not None:
                payload[capability] = {"provider": binding.provider, "model": binding.model}
        return payload


def _catalog(definitions: Iterable[EngineDefinition]) -> Mapping[str, EngineDefinition]:
    return MappingProxyType({definition.id: definition for definition in definitions})


ENGINE_CATALOG: Mapping[str, EngineDefinition] = _catalog(
    [
        EngineDefinition(
            id="openai-gpt-5.1",
            label="OpenAI · GPT-5.1",
            provider=PROVIDER_OPENAI,
            kind=KIND_BOTH,
            text=ModelBinding(PROVIDER_OPENAI, "gpt-5.1"),
            image=ModelBinding(PROVIDER_OPENAI, "gpt-image-1"),
        ),
        EngineDefinition(
            id="openai-gpt-5-mini",
            label="OpenAI · GPT-5 mini",
            provider=PROVIDER_OPENAI,
            kind=KIND_BOTH,
            text=ModelBinding(PROVIDER_OPENAI, "gpt-5-mini"),
            image=ModelBinding(PROVIDER_OPENAI, "gpt-image-1"),
        ),
        EngineDefinition(
            id="gemini-3-preview",
            label="Gemini · 3 Pro Preview",
            provider=PROVIDER_GEMINI,
            kind=KIND_BOTH,
            text=ModelBinding(PROVIDER_GEMINI, "gemini-3-pro-preview"),
            image=ModelBinding(PROVIDER_GEMINI, "gemini-3-pro-image-preview"),
        ),
    ]
)

DEFAULT_ENGINE_ID = "gemini-3-preview"
DEFAULT_ENGINE_IDS: Mapping[str, str] = MappingProxyType(
    {
        CAPABILITY_TEXT: DEFAULT_ENGINE_ID,
        CAPABILITY_IMAGE: DEFAULT_ENGINE_ID,
    }
)

# Identifiers that older clients stored before engines had logical ids.
LEGACY_ENGINE_ALIASES: Mapping[str, str] = MappingProxyType(
    {
        "openai-image-1": "openai-gpt-5.1",
        "openai": "openai-gpt-5.1",
        "gemini": "gemini-3-preview",
        "google": "gemini-3-preview",
    }
)


class EngineRegistry:
    def __init__(
        self,
        catalog: Mapping[str, EngineDefinition] = ENGINE_CATALOG,
        defaults: Mapping[str, str] = DEFAULT_ENGINE_IDS,
        aliases: Mapping[str, str] = LEGACY_ENGINE_ALIASES,
    ) -> None:
        self._catalog = MappingProxyType(dict(catalog))
        for capability, engine_id in defaults.items():
            engine = self._catalog.get(engine_id)
            if engine is None or not engine.supports(capability):
                raise ValueError(f"Default {capability} engine {engine_id!r} is not usable for {capability}.")
        self._defaults = MappingProxyType(dict(defaults))
        self._lookup = self._build_lookup(aliases)

    def _build_lookup(self, aliases: Mapping[str, str]) -> Mapping[str, str]:
        lookup: Dict[str, str] = {}
        # Provider model names resolve to the first engine that uses them.
        for engine in self._catalog.values():
            for capability in CAPABILITIES:
                binding = engine.binding_for(capability)
                if binding is not None:
                    lookup.setdefault(binding.model.lower(), engine.id)
        for alias, engine_id in aliases.items():
            if engine_id in self._catalog:
                lookup[alias.lower()] = engine_id
        for engine_id in self._catalog:
            lookup[engine_id.lower()] = engine_id
        return MappingProxyType(lookup)

    def __contains__(self, engine_id: object) -> bool:
        return isinstance(engine_id, str) and engine_id in self._catalog

    def resolve(self, engine_id: str) -> EngineDefinition:
        engine = self._catalog.get(engine_id) if isinstance(engine_id, str) else None
        if engine is None:
            raise UnknownEngine(engine_id)
        return engine

    def default_for(self, capability: str) -> str:
        try:
            return self._defaults[capability]
        except KeyError as exc:
            raise CapabilityNotConfigured("<default>", capability) from exc

    def all(self) -> List[EngineDefinition]:
        return list(self._catalog.values())

    def normalize(self, raw: object) -> Optional[str]:
        """Map a loosely specified identifier to a catalog engine id, or ``None``."""

        if not isinstance(raw, str):
            return None
        cleaned = raw.strip().lower()
        if not cleaned:
            return None
        return self._lookup.get(cleaned)


@dataclass(frozen=True)
class EngineSelection:
    engine: EngineDefinition
    capability: str
    requested_id: Optional[str]
    substituted: bool = False
    reason: Optional[str] = None

    @property
    def engine_id(self) -> str:
        return self.engine.id

    @property
    def binding(self) -> ModelBinding:
        binding = self.engine.binding_for(self.capability)
        if binding is None:  # pragma: no cover - guarded by select_engine
            raise CapabilityNotConfigured(self.engine.id, self.capability)
        return binding


def select_engine(registry: EngineRegistry, raw_id: object, capability: str) -> EngineSelection:
    """Resolve ``raw_id`` for ``capability``, substituting the default when unknown.

    Engine ids can come straight from client payloads, so an unknown or blank
    id is replaced by the registry default for the capability and the
    substitution is logged and reported on the returned selection. A known
    engine that lacks the capability is an error.
    """

    requested = raw_id.strip() if isinstance(raw_id, str) else None
    engine_id = registry.normalize(requested)
    substituted = False
    reason = None

    if engine_id is None:
        engine_id = registry.default_for(capability)
        substituted = True
        reason = "missing" if not requested else "unknown"
        if requested:
            LOGGER.warning(
                "Unknown %s engine id %r; falling back to default engine %s.",
                capability,
                requested,
                engine_id,
            )
        else:
            LOGGER.info("No %s engine requested; using default engine %s.", capability, engine_id)
    elif engine_id != requested:
        LOGGER.info("Normalised %s engine id %r to %s.", capability, requested, engine_id)

    engine = registry.resolve(engine_id)
    if not engine.supports(capability):
        if capability == CAPABILITY_TEXT:
            raise EngineNotTextCapable(engine.id)
        raise CapabilityNotConfigured(engine.id, capability)

    return EngineSelection(
        engine=engine,
        capability=capability,
        requested_id=requested,
        substituted=substituted,
        reason=reason,
    )


# ---------------- per-project configuration ----------------
ENGINE_CONFIG_SLOTS = ("globalEngineId", "canonEngineId", "copilotEngineId", "imageEngineId")
_SNAKE_CASE_SLOTS = {
    "globalEngineId": "global_engine_id",
    "canonEngineId": "canon_engine_id",
    "copilotEngineId": "copilot_engine_id",
    "imageEngineId": "image_engine_id",
}


@dataclass(frozen=True)
class ProjectEngineConfig:
    global_engine_id: str
    canon_engine_id: str
    copilot_engine_id: str
    image_engine_id: str

    def engine_for_mode(self, mode: str) -> str:
        return self.canon_engine_id if mode == "canon" else self.copilot_engine_id

    def to_dict(self) -> Dict[str, str]:
        return {
            "globalEngineId": self.global_engine_id,
            "canonEngineId": self.canon_engine_id,
            "copilotEngineId": self.copilot_engine_id,
            "imageEngineId": self.image_engine_id,
        }


def _slot_value(partial: Any, slot: str) -> Optional[str]:
    if partial is None:
        return None
    if isinstance(partial, Mapping):
        raw = partial.get(slot)
        if raw is None:
            raw = partial.get(_SNAKE_CASE_SLOTS[slot])
    else:
        raw = getattr(partial, _SNAKE_CASE_SLOTS[slot], None)
    if isinstance(raw, str) and raw.strip():
        return raw.strip()
    return None


def ensure_project_engine_config(
    partial: Any = None,
    *,
    default_engine_id: str = DEFAULT_ENGINE_ID,
) -> ProjectEngineConfig:
    """Return a complete config, filling unset slots from the global slot.

    The stored configuration is never rewritten by this function, so a later
    change of the global engine still reaches every slot left unset.
    """

    global_engine_id = _slot_value(partial, "globalEngineId") or default_engine_id
    return ProjectEngineConfig(
        global_engine_id=global_engine_id,
        canon_engine_id=_slot_value(partial, "canonEngineId") or global_engine_id,
        copilot_engine_id=_slot_value(partial, "copilotEngineId") or global_engine_id,
        image_engine_id=_slot_value(partial, "imageEngineId") or global_engine_id,
    )


def merge_engine_config(
    stored: Optional[Mapping[str, Any]],
    changes: Mapping[str, Any],
    registry: EngineRegistry,
) -> Dict[str, str]:
    """Apply an explicit user update to a stored partial configuration.

    Blank values clear a slot so it follows the global engine again. Unknown
    ids are rejected because the user picked them explicitly.
    """

    merged: Dict[str, str] = {}
    for slot in ENGINE_CONFIG_SLOTS:
        existing = _slot_value(stored, slot)
        if existing:
            merged[slot] = existing

    for slot in ENGINE_CONFIG_SLOTS:
        if slot not in changes and _SNAKE_CASE_SLOTS[slot] not in changes:
            continue
        raw = _slot_value(changes, slot)
        if raw is None:
            merged.pop(slot, None)
            continue
        engine_id = registry.normalize(raw)
        if engine_id is None:
            raise UnknownEngine(raw)
        merged[slot] = engine_id
    return merged


__all__ = [
    "CAPABILITY_IMAGE",
    "CAPABILITY_TEXT",
    "DEFAULT_ENGINE_ID",
    "ENGINE_CATALOG",
    "ENGINE_CONFIG_SLOTS",
    "EngineDefinition",
    "EngineRegistry",
    "EngineSelection",
    "ModelBinding",
    "PROVIDER_GEMINI",
    "PROVIDER_OPENAI",
    "ProjectEngineConfig",
    "ensure_project_engine_config",
    "merge_engine_config",
    "select_engine",
]
