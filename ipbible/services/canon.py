"""Structured canon: JSON extraction from model text and the canon document model."""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, TypeVar

from .errors import InvalidStructuredOutput

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_FENCE = "```"


def strip_json_fence(raw_text: str) -> str:
    """Remove Markdown fences and any prose preamble in front of a JSON object."""

    text = (raw_text or "").strip()
    if text.startswith(_FENCE):
        first_newline = text.find("\n")
        last_fence = text.rfind(_FENCE)
        if first_newline != -1 and last_fence > first_newline:
            text = text[first_newline + 1 : last_fence].strip()
    first_brace = text.find("{")
    if first_brace > 0:
        text = text[first_brace:]
    return text


def extract_json(raw_text: str, schema: Optional[Callable[[Any], T]] = None) -> Any:
    """Parse model output into JSON, optionally passing the result through ``schema``.

    Parsing is attempted once. On failure :class:`InvalidStructuredOutput` is
    raised with the cleaned text attached; re-prompting is up to the caller.
    """

    cleaned = strip_json_fence(raw_text)
    try:
        parsed = json.loads(cleaned)
    except (TypeError, ValueError) as exc:
        LOGGER.error("Structured output could not be parsed: %s", cleaned[:300].replace("\n", " "))
        raise InvalidStructuredOutput(f"Model output is not valid JSON: {exc}", cleaned_text=cleaned) from exc
    if schema is None:
        return parsed
    try:
        return schema(parsed)
    except InvalidStructuredOutput as exc:
        if not exc.cleaned_text:
            exc.cleaned_text = cleaned
        raise


# ---------------- coercion helpers ----------------
def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, (list, tuple)):
        return ", ".join(_text(item) for item in value if _text(item))
    return ""


def _text_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if not isinstance(value, (list, tuple)):
        return []
    return [_text(item) for item in value if _text(item)]


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", (value or "").lower()).strip("-")


def _entry_id(payload: Mapping[str, Any], fallback_key: Optional[str], prefix: str, index: int) -> str:
    for candidate in (payload.get("id"), fallback_key, slugify(_text(payload.get("name")))):
        cleaned = _text(candidate)
        if cleaned:
            return cleaned
    return f"{prefix}-{index + 1}"


def _detail_entries(raw: Any) -> Iterable[Tuple[Optional[str], Mapping[str, Any]]]:
    if isinstance(raw, Mapping):
        for key, value in raw.items():
            if isinstance(value, Mapping):
                yield str(key), value
    elif isinstance(raw, list):
        for value in raw:
            if isinstance(value, Mapping):
                yield None, value


# ---------------- canon model ----------------
@dataclass
class Plot:
    title: str = ""
    logline: str = ""
    synopsis: str = ""

    @classmethod
    def from_dict(cls, payload: Any) -> "Plot":
        data = _mapping(payload)
        return cls(title=_text(data.get("title")), logline=_text(data.get("logline")), synopsis=_text(data.get("synopsis")))

    def to_dict(self) -> Dict[str, Any]:
        return {"title": self.title, "logline": self.logline, "synopsis": self.synopsis}


@dataclass
class CharacterCard:
    id: str
    name: str = ""
    occupation: str = ""
    role: str = ""
    bio: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "occupation": self.occupation, "role": self.role, "bio": self.bio}


@dataclass
class Relationship:
    name: str
    relation: str = ""
    note: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Any) -> Optional["Relationship"]:
        data = _mapping(payload)
        name = _text(data.get("name"))
        if not name:
            return None
        return cls(name=name, relation=_text(data.get("relation")), note=_text(data.get("note")) or None)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"name": self.name, "relation": self.relation}
        if self.note:
            payload["note"] = self.note
        return payload


@dataclass
class CharacterDetail:
    id: str
    name: str = ""
    occupation: str = ""
    role: str = ""
    short_bio: str = ""
    long_bio: str = ""
    visual_notes: str = ""
    goals: str = ""
    flaws: str = ""
    relationships: List[Relationship] = field(default_factory=list)
    key_scenes: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, entry_id: str, data: Mapping[str, Any]) -> "CharacterDetail":
        relationships = [Relationship.from_dict(item) for item in _list(data.get("relationships")) if isinstance(item, Mapping)]
        return cls(
            id=entry_id,
            name=_text(data.get("name")),
            occupation=_text(data.get("occupation")),
            role=_text(data.get("role")),
            short_bio=_text(data.get("shortBio")),
            long_bio=_text(data.get("longBio")),
            visual_notes=_text(data.get("visualNotes")),
            goals=_text(data.get("goals")),
            flaws=_text(data.get("flaws")),
            relationships=[item for item in relationships if item is not None],
            key_scenes=_text_list(data.get("keyScenes")),
        )

    @classmethod
    def from_card(cls, card: CharacterCard) -> "CharacterDetail":
        return cls(id=card.id, name=card.name, occupation=card.occupation, role=card.role, short_bio=card.bio)

    def to_card(self) -> CharacterCard:
        return CharacterCard(id=self.id, name=self.name, occupation=self.occupation, role=self.role, bio=self.short_bio)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "occupation": self.occupation,
            "role": self.role,
            "shortBio": self.short_bio,
            "longBio": self.long_bio,
            "visualNotes": self.visual_notes,
            "goals": self.goals,
            "flaws": self.flaws,
            "relationships": [item.to_dict() for item in self.relationships],
            "keyScenes": list(self.key_scenes),
        }


@dataclass
class LocationCard:
    id: str
    name: str = ""
    world: str = ""
    region: str = ""
    place_type: str = ""
    note: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "world": self.world,
            "region": self.region,
            "placeType": self.place_type,
            "note": self.note,
        }


@dataclass
class LocationDetail:
    id: str
    name: str = ""
    world: str = ""
    region: str = ""
    place_type: str = ""
    mood_line: str = ""
    description: str = ""
    function_in_story: str = ""
    recurring_time_or_weather: str = ""
    key_scenes: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, entry_id: str, data: Mapping[str, Any]) -> "LocationDetail":
        return cls(
            id=entry_id,
            name=_text(data.get("name")),
            world=_text(data.get("world")),
            region=_text(data.get("region")),
            place_type=_text(data.get("placeType")),
            mood_line=_text(data.get("moodLine")),
            description=_text(data.get("description")),
            function_in_story=_text(data.get("functionInStory")),
            recurring_time_or_weather=_text(data.get("recurringTimeOrWeather")),
            key_scenes=_text_list(data.get("keyScenes")),
        )

    @classmethod
    def from_card(cls, card: LocationCard) -> "LocationDetail":
        return cls(
            id=card.id,
            name=card.name,
            world=card.world,
            region=card.region,
            place_type=card.place_type,
            mood_line=card.note,
        )

    def to_card(self) -> LocationCard:
        return LocationCard(
            id=self.id,
            name=self.name,
            world=self.world,
            region=self.region,
            place_type=self.place_type,
            note=self.mood_line,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "world": self.world,
            "region": self.region,
            "placeType": self.place_type,
            "moodLine": self.mood_line,
            "description": self.description,
            "functionInStory": self.function_in_story,
            "recurringTimeOrWeather": self.recurring_time_or_weather,
            "keyScenes": list(self.key_scenes),
        }


def _character_card(entry_id: str, data: Mapping[str, Any]) -> CharacterCard:
    return CharacterCard(
        id=entry_id,
        name=_text(data.get("name")),
        occupation=_text(data.get("occupation")),
        role=_text(data.get("role")),
        bio=_text(data.get("bio")),
    )


def _location_card(entry_id: str, data: Mapping[str, Any]) -> LocationCard:
    return LocationCard(
        id=entry_id,
        name=_text(data.get("name")),
        world=_text(data.get("world")),
        region=_text(data.get("region")),
        place_type=_text(data.get("placeType")),
        note=_text(data.get("note")),
    )


def _reconcile(
    raw_section: Any,
    prefix: str,
    card_factory: Callable[[str, Mapping[str, Any]], Any],
    detail_factory: Callable[[str, Mapping[str, Any]], Any],
    detail_from_card: Callable[[Any], Any],
) -> Tuple[List[Any], Dict[str, Any]]:
    """Build a (list, byId) pair where every card has a detail and vice versa."""

    section = _mapping(raw_section)
    cards: List[Any] = []
    seen: set = set()
    for index, item in enumerate(_list(section.get("list"))):
        if not isinstance(item, Mapping):
            continue
        entry_id = _entry_id(item, None, prefix, index)
        if entry_id in seen:
            LOGGER.debug("Dropping duplicate %s id %s", prefix, entry_id)
            continue
        seen.add(entry_id)
        cards.append(card_factory(entry_id, item))

    details: Dict[str, Any] = {}
    for index, (key, item) in enumerate(_detail_entries(section.get("byId"))):
        entry_id = _entry_id(item, key, prefix, len(cards) + index)
        if entry_id in details:
            continue
        details[entry_id] = detail_factory(entry_id, item)

    for card in cards:
        if card.id not in details:
            details[card.id] = detail_from_card(card)
        elif not details[card.id].name:
            details[card.id].name = card.name
    for entry_id, detail in details.items():
        if entry_id not in seen:
            seen.add(entry_id)
            cards.append(detail.to_card())

    ordered = {card.id: details[card.id] for card in cards}
    return cards, ordered


@dataclass
class CharacterSection:
    entries: List[CharacterCard] = field(default_factory=list)
    by_id: Dict[str, CharacterDetail] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Any) -> "CharacterSection":
        cards, details = _reconcile(payload, "character", _character_card, CharacterDetail.from_dict, CharacterDetail.from_card)
        return cls(entries=cards, by_id=details)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "list": [card.to_dict() for card in self.entries],
            "byId": {key: detail.to_dict() for key, detail in self.by_id.items()},
        }


@dataclass
class LocationSection:
    entries: List[LocationCard] = field(default_factory=list)
    by_id: Dict[str, LocationDetail] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Any) -> "LocationSection":
        cards, details = _reconcile(payload, "location", _location_card, LocationDetail.from_dict, LocationDetail.from_card)
        return cls(entries=cards, by_id=details)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "list": [card.to_dict() for card in self.entries],
            "byId": {key: detail.to_dict() for key, detail in self.by_id.items()},
        }


@dataclass
class ArtStyle:
    aesthetic: str = ""
    palette: str = ""

    @classmethod
    def from_dict(cls, payload: Any) -> "ArtStyle":
        data = _mapping(payload)
        return cls(aesthetic=_text(data.get("aesthetic")), palette=_text(data.get("palette")))

    def to_dict(self) -> Dict[str, Any]:
        return {"aesthetic": self.aesthetic, "palette": self.palette}


@dataclass
class WorldRules:
    physics_magic: str = ""
    technology: str = ""
    society: str = ""

    @classmethod
    def from_dict(cls, payload: Any) -> "WorldRules":
        data = _mapping(payload)
        return cls(
            physics_magic=_text(data.get("physicsMagic")),
            technology=_text(data.get("technology")),
            society=_text(data.get("society")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"physicsMagic": self.physics_magic, "technology": self.technology, "society": self.society}


@dataclass
class StructuredCanon:
    """The canonical IP bible extracted from a script.

    ``from_dict`` is lenient: missing sections become empty, and the
    character/location ``list`` and ``byId`` views are reconciled so that
    every id appears in both.
    """

    plot: Plot = field(default_factory=Plot)
    characters: CharacterSection = field(default_factory=CharacterSection)
    locations: LocationSection = field(default_factory=LocationSection)
    art_style: ArtStyle = field(default_factory=ArtStyle)
    world_rules: WorldRules = field(default_factory=WorldRules)

    @classmethod
    def from_dict(cls, payload: Any) -> "StructuredCanon":
        if isinstance(payload, StructuredCanon):
            return payload
        if not isinstance(payload, Mapping):
            raise InvalidStructuredOutput("Canon must be a JSON object.")
        return cls(
            plot=Plot.from_dict(payload.get("plot")),
            characters=CharacterSection.from_dict(payload.get("characters")),
            locations=LocationSection.from_dict(payload.get("locations")),
            art_style=ArtStyle.from_dict(payload.get("artStyle")),
            world_rules=WorldRules.from_dict(payload.get("worldRules")),
        )

    @property
    def title(self) -> str:
        return self.plot.title

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plot": self.plot.to_dict(),
            "characters": self.characters.to_dict(),
            "locations": self.locations.to_dict(),
            "artStyle": self.art_style.to_dict(),
            "worldRules": self.world_rules.to_dict(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)


def parse_canon(raw_text: str) -> StructuredCanon:
    return extract_json(raw_text, StructuredCanon.from_dict)


__all__ = [
    "ArtStyle",
    "CharacterCard",
    "CharacterDetail",
    "CharacterSection",
    "LocationCard",
    "LocationDetail",
    "LocationSection",
    "Plot",
    "Relationship",
    "StructuredCanon",
    "WorldRules",
    "extract_json",
    "parse_canon",
    "slugify",
    "strip_json_fence",
]
