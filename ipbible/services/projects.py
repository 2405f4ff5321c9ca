"""Project records: canon, soft canon, engine selection, hero and entity images.

All data for a project is stored as records under ``ipbible:*`` keys; this
module is the only place that knows the key layout.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from flask import current_app

from ..storage import RecordStore
from .canon import StructuredCanon

CHAT_MODES = ("canon", "copilot")
ENTITY_KINDS = ("character", "location")


class ProjectNotFound(LookupError):
    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        super().__init__(f"No project found for id {project_id!r}.")


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# ---------------- key layout ----------------
def projects_key() -> str:
    return "ipbible:projects"


def project_key(project_id: str) -> str:
    return f"ipbible:project:{project_id}"


def script_key(project_id: str) -> str:
    return f"ipbible:script:{project_id}"


def engines_key(project_id: str) -> str:
    return f"ipbible:engines:{project_id}"


def hero_key(project_id: str) -> str:
    return f"ipbible:images:{project_id}:hero"


def chat_key(project_id: str, mode: str) -> str:
    return f"ipbible:chat:{project_id}:{mode}"


def entity_image_key(project_id: str, kind: str, entity_id: str) -> str:
    return f"ipbible:images:{project_id}:{kind}:{entity_id}"


def entity_images_key(project_id: str, kind: str) -> str:
    return f"ipbible:images:{project_id}:{kind}s"


# ---------------- records ----------------
@dataclass
class ProjectMeta:
    id: str
    name: str
    created_at: str

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ProjectMeta":
        return cls(
            id=str(payload.get("id") or ""),
            name=str(payload.get("name") or payload.get("id") or ""),
            created_at=str(payload.get("createdAt") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "createdAt": self.created_at}


@dataclass
class ScriptRecord:
    filename: str
    text: str
    created_at: str

    @classmethod
    def from_dict(cls, payload: Any) -> Optional["ScriptRecord"]:
        if not isinstance(payload, dict) or not isinstance(payload.get("text"), str):
            return None
        return cls(
            filename=str(payload.get("filename") or "script"),
            text=payload["text"],
            created_at=str(payload.get("createdAt") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"filename": self.filename, "text": self.text, "createdAt": self.created_at}


@dataclass
class HeroRecord:
    url: str
    source: str
    engine_id: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Any) -> Optional["HeroRecord"]:
        if not isinstance(payload, dict) or not payload.get("url"):
            return None
        return cls(url=str(payload["url"]), source=str(payload.get("source") or "ai"), engine_id=payload.get("engineId"))

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"url": self.url, "source": self.source}
        if self.engine_id:
            payload["engineId"] = self.engine_id
        return payload


@dataclass
class EntityImageRecord:
    url: str
    engine_id: Optional[str]
    project_id: str
    kind: str
    entity_id: str
    created_at: str
    source: str = "ai"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "engineId": self.engine_id,
            "projectId": self.project_id,
            f"{self.kind}Id": self.entity_id,
            "createdAt": self.created_at,
            "source": self.source,
        }


class ProjectRepository:
    def __init__(self, records: RecordStore) -> None:
        self.records = records

    # ---------------- project list ----------------
    def list_projects(self) -> List[ProjectMeta]:
        raw = self.records.get(projects_key(), [])
        if not isinstance(raw, list):
            return []
        return [ProjectMeta.from_dict(item) for item in raw if isinstance(item, dict) and item.get("id")]

    def add_project(self, meta: ProjectMeta) -> None:
        projects = [item for item in self.list_projects() if item.id != meta.id]
        projects.append(meta)
        self.records.set(projects_key(), [item.to_dict() for item in projects])

    def get_project_meta(self, project_id: str) -> Optional[ProjectMeta]:
        for meta in self.list_projects():
            if meta.id == project_id:
                return meta
        return None

    def delete_project(self, project_id: str) -> bool:
        projects = self.list_projects()
        remaining = [item for item in projects if item.id != project_id]
        self.records.set(projects_key(), [item.to_dict() for item in remaining])

        keys = [
            project_key(project_id),
            script_key(project_id),
            engines_key(project_id),
            hero_key(project_id),
        ]
        keys.extend(chat_key(project_id, mode) for mode in CHAT_MODES)
        for kind in ENTITY_KINDS:
            images = self.records.hash_get(entity_images_key(project_id, kind))
            keys.append(entity_images_key(project_id, kind))
            keys.extend(entity_image_key(project_id, kind, entity_id) for entity_id in images)
        removed = self.records.delete(*keys)
        current_app.logger.info("Deleted project %s (%d records)", project_id, removed)
        return len(remaining) != len(projects)

    # ---------------- canon & soft canon ----------------
    def load_canon_payload(self, project_id: str) -> Optional[Dict[str, Any]]:
        payload = self.records.get(project_key(project_id))
        return payload if isinstance(payload, dict) else None

    def load_canon(self, project_id: str) -> StructuredCanon:
        payload = self.load_canon_payload(project_id)
        if payload is None:
            raise ProjectNotFound(project_id)
        return StructuredCanon.from_dict(payload)

    def save_canon(self, project_id: str, canon: StructuredCanon) -> None:
        self.records.set(project_key(project_id), canon.to_dict())

    def load_script(self, project_id: str) -> Optional[ScriptRecord]:
        return ScriptRecord.from_dict(self.records.get(script_key(project_id)))

    def save_script(self, project_id: str, script: ScriptRecord) -> None:
        self.records.set(script_key(project_id), script.to_dict())

    # ---------------- engines ----------------
    def load_engine_config(self, project_id: str) -> Optional[Dict[str, Any]]:
        payload = self.records.get(engines_key(project_id))
        return payload if isinstance(payload, dict) else None

    def save_engine_config(self, project_id: str, partial: Dict[str, Any]) -> None:
        self.records.set(engines_key(project_id), dict(partial))

    # ---------------- images ----------------
    def load_hero(self, project_id: str) -> Optional[HeroRecord]:
        return HeroRecord.from_dict(self.records.get(hero_key(project_id)))

    def save_hero(self, project_id: str, hero: HeroRecord) -> None:
        self.records.set(hero_key(project_id), hero.to_dict())

    def save_entity_image(self, record: EntityImageRecord) -> None:
        self.records.set(
            entity_image_key(record.project_id, record.kind, record.entity_id),
            record.to_dict(),
        )
        self.records.hash_set(entity_images_key(record.project_id, record.kind), {record.entity_id: record.url})

    def set_entity_image_url(self, project_id: str, kind: str, entity_id: str, url: str) -> None:
        self.records.hash_set(entity_images_key(project_id, kind), {entity_id: url})

    def entity_images(self, project_id: str, kind: str) -> Dict[str, str]:
        return self.records.hash_get(entity_images_key(project_id, kind))


__all__ = [
    "CHAT_MODES",
    "ENTITY_KINDS",
    "EntityImageRecord",
    "HeroRecord",
    "ProjectMeta",
    "ProjectNotFound",
    "ProjectRepository",
    "ScriptRecord",
    "chat_key",
    "utc_timestamp",
]
