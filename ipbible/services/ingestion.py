"""Script ingestion: uploaded file in, canon plus project records out."""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from flask import current_app

from .canon import StructuredCanon
from .documents import ExtractedDocument, extract_document
from .engines import ENGINE_CONFIG_SLOTS, EngineRegistry, ProjectEngineConfig
from .orchestrator import GenerationOrchestrator
from .projects import HeroRecord, ProjectMeta, ScriptRecord, utc_timestamp


@dataclass
class IngestResult:
    project_id: str
    name: str
    canon: StructuredCanon
    script: ScriptRecord
    engines: ProjectEngineConfig
    hero: Optional[HeroRecord]
    word_count: int

    @property
    def summary(self) -> Dict[str, int]:
        return {
            "wordCount": self.word_count,
            "characters": len(self.canon.characters.entries),
            "locations": len(self.canon.locations.entries),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "ipBible": self.canon.to_dict(),
            "projectId": self.project_id,
            "projectName": self.name,
            "hero": self.hero.to_dict() if self.hero else None,
            "engines": self.engines.to_dict(),
            "script": self.script.to_dict(),
        }


def build_partial_engine_config(registry: EngineRegistry, choices: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Keep only the slots the uploader picked, normalised to catalog ids.

    Unrecognised picks are dropped with a warning so that the slot follows the
    global engine when the config is read.
    """

    partial: Dict[str, str] = {}
    for slot in ENGINE_CONFIG_SLOTS:
        raw = (choices or {}).get(slot)
        if not isinstance(raw, str) or not raw.strip():
            continue
        engine_id = registry.normalize(raw)
        if engine_id is None:
            current_app.logger.warning("Ignoring unknown engine id %r for %s", raw, slot)
            continue
        partial[slot] = engine_id
    if "globalEngineId" not in partial and "canonEngineId" in partial:
        partial["globalEngineId"] = partial["canonEngineId"]
    return partial


def ingest_script(
    orchestrator: GenerationOrchestrator,
    data: bytes,
    filename: str,
    project_name: str,
    engine_choices: Optional[Mapping[str, Any]] = None,
) -> IngestResult:
    document: ExtractedDocument = extract_document(data, filename)

    project_id = str(uuid.uuid4())
    now = utc_timestamp()
    partial = build_partial_engine_config(orchestrator.registry, engine_choices)
    engines = orchestrator.ensure_project_engine_config(partial)

    canon = orchestrator.extract_canon(document.text, engines.canon_engine_id)
    hero = orchestrator.generate_hero(
        canon,
        project_id,
        document.file_kind,
        document.data,
        engines.image_engine_id,
        persist=False,
    )

    projects = orchestrator.projects
    script = ScriptRecord(filename=document.filename, text=document.text, created_at=now)
    meta = ProjectMeta(id=project_id, name=project_name.strip() or document.filename or project_id, created_at=now)
    projects.save_canon(project_id, canon)
    projects.save_script(project_id, script)
    projects.save_engine_config(project_id, partial)
    projects.add_project(meta)
    if hero is not None:
        projects.save_hero(project_id, hero)

    result = IngestResult(
        project_id=project_id,
        name=meta.name,
        canon=canon,
        script=script,
        engines=engines,
        hero=hero,
        word_count=document.word_count,
    )
    current_app.logger.info(
        "Ingested %s as project %s: %s, hero=%s",
        document.filename,
        project_id,
        result.summary,
        hero.source if hero else None,
    )
    return result


__all__ = ["IngestResult", "build_partial_engine_config", "ingest_script"]
