"""Prompt composition for canon chat, canon extraction and image generation.

Every builder returns new objects; stored canon, scripts and histories are
never modified in place.
"""
from __future__ import annotations

import json
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from ..system_prompts import (
    get_image_prompt_template,
    get_mode_guideline,
    get_prompt_entry,
    get_prompt_max_chars,
)
from .canon import StructuredCanon
from .providers import VALID_ROLES, ChatMessage

HISTORY_ROLES = ("user", "assistant")
DEFAULT_HISTORY_WINDOW = 40
DEFAULT_EXCERPT_CHARS = get_prompt_max_chars("script_context", 20_000) or 20_000
DEFAULT_CANON_SCRIPT_CHARS = get_prompt_max_chars("canon_extraction", 80_000) or 80_000


def _canon_payload(canon: Any) -> Any:
    if isinstance(canon, StructuredCanon):
        return canon.to_dict()
    return canon if canon is not None else {}


def build_canon_system_prompt(canon: Any, mode: str = "canon") -> str:
    entry = get_prompt_entry("canon_chat")
    serialized = json.dumps(_canon_payload(canon), ensure_ascii=False, indent=2)
    sections = [
        entry.get("persona", "").strip(),
        serialized,
        entry.get("guidelines", "").strip(),
        get_mode_guideline(mode).strip(),
    ]
    return "\n\n".join(section for section in sections if section)


def _script_field(script: Any, name: str) -> Any:
    if isinstance(script, Mapping):
        return script.get(name)
    return getattr(script, name, None)


def build_script_context_prompt(script: Any, limit: Optional[int] = None) -> Optional[str]:
    """Return the soft-context system prompt, or ``None`` when there is no script text."""

    if script is None:
        return None
    text = _script_field(script, "text")
    if not isinstance(text, str) or not text:
        return None

    entry = get_prompt_entry("script_context")
    max_chars = limit or DEFAULT_EXCERPT_CHARS
    if len(text) > max_chars:
        excerpt = text[:max_chars] + entry.get("truncation_marker", "")
    else:
        excerpt = text

    created_at = _script_field(script, "created_at") or _script_field(script, "createdAt") or "unknown"
    return entry["template"].format(
        filename=_script_field(script, "filename") or "script",
        created_at=created_at,
        excerpt=excerpt,
    )


def _sanitize(messages: Iterable[Any], allowed: Sequence[str]) -> List[ChatMessage]:
    cleaned: List[ChatMessage] = []
    for raw in messages or []:
        message = ChatMessage.from_dict(raw)
        if message is None or message.role not in allowed:
            continue
        cleaned.append(message)
    return cleaned


def sanitize_history(entries: Iterable[Any]) -> List[ChatMessage]:
    """Keep stored turns that have content and a user/assistant role."""

    return _sanitize(entries, HISTORY_ROLES)


def sanitize_new_turn(messages: Iterable[Any]) -> List[ChatMessage]:
    return _sanitize(messages, VALID_ROLES)


def bounded_window(log: Sequence[Any], window: int = DEFAULT_HISTORY_WINDOW) -> List[Any]:
    """Return the most recent ``window`` entries of ``log`` in their original order."""

    entries = list(log or [])
    if window <= 0:
        return []
    return entries[-window:]


def compose_chat_messages(
    canon: Any,
    mode: str,
    history: Sequence[Any],
    new_messages: Iterable[Any],
    *,
    script: Any = None,
    window: int = DEFAULT_HISTORY_WINDOW,
    excerpt_limit: Optional[int] = None,
) -> List[ChatMessage]:
    messages = [ChatMessage("system", build_canon_system_prompt(canon, mode))]
    script_prompt = build_script_context_prompt(script, excerpt_limit)
    if script_prompt:
        messages.append(ChatMessage("system", script_prompt))
    messages.extend(sanitize_history(bounded_window(history, window)))
    messages.extend(sanitize_new_turn(new_messages))
    return messages


def build_extraction_messages(script_text: str, limit: Optional[int] = None) -> List[ChatMessage]:
    entry = get_prompt_entry("canon_extraction")
    system_prompt = f"{entry['base'].strip()}\n\n{entry['rules'].strip()}"
    max_chars = limit or DEFAULT_CANON_SCRIPT_CHARS
    return [
        ChatMessage("system", system_prompt),
        ChatMessage("user", (script_text or "")[:max_chars]),
    ]


# ---------------- image prompts ----------------
def build_hero_prompt(canon: Any) -> str:
    entry = get_prompt_entry("image_prompts")
    defaults = entry.get("hero_defaults", {})
    structured = canon if isinstance(canon, StructuredCanon) else StructuredCanon.from_dict(canon or {})
    return entry["hero"].format(
        title=structured.plot.title or defaults.get("title", ""),
        aesthetic=structured.art_style.aesthetic or defaults.get("aesthetic", ""),
        palette=structured.art_style.palette or defaults.get("palette", ""),
    )


def build_entity_image_prompt(kind: str, name: Optional[str], description: Optional[str]) -> str:
    template = get_image_prompt_template(kind)
    if not template:
        raise ValueError(f"Unsupported entity kind: {kind!r}")
    lines = [template["subject"].format(name=(name or "").strip() or template["default_name"])]
    if description and description.strip():
        lines.append(template["details"].format(description=description.strip()))
    lines.append(template["framing"])
    return " ".join(lines)


__all__ = [
    "DEFAULT_HISTORY_WINDOW",
    "bounded_window",
    "build_canon_system_prompt",
    "build_entity_image_prompt",
    "build_extraction_messages",
    "build_hero_prompt",
    "build_script_context_prompt",
    "compose_chat_messages",
    "sanitize_history",
    "sanitize_new_turn",
]
