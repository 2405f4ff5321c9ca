from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from flask import current_app, jsonify, request

from ..services.documents import DocumentExtractionError
from ..services.engines import CAPABILITIES, ENGINE_CONFIG_SLOTS
from ..services.errors import (
    GenerationError,
    MalformedOutputError,
    ProviderTimeout,
    TransportError,
    UnknownEngine,
)
from ..services.ingestion import ingest_script
from ..services.orchestrator import ChatRequestError, normalize_mode
from ..services.projects import ProjectNotFound
from ..services.runtime import get_orchestrator
from ..storage import ConcurrentUpdateError, ObjectStoreError, RecordStoreError
from . import bp


HANDLED_ERRORS = (
    GenerationError,
    DocumentExtractionError,
    ProjectNotFound,
    ChatRequestError,
    RecordStoreError,
    ObjectStoreError,
)

IMAGE_KINDS = {"characters": "character", "locations": "location"}


def _error(message: str, status: int):
    return jsonify({"error": message}), status


def _status_for(exc: Exception) -> int:
    if isinstance(exc, ProjectNotFound):
        return 404
    if isinstance(exc, (ChatRequestError, DocumentExtractionError, UnknownEngine)):
        return 400
    if isinstance(exc, ConcurrentUpdateError):
        return 409
    if isinstance(exc, ProviderTimeout):
        return 504
    if isinstance(exc, (TransportError, MalformedOutputError)):
        return 502
    return 500


def _failure(exc: Exception, action: str):
    status = _status_for(exc)
    if status >= 500:
        current_app.logger.error("%s failed: %s", action, exc)
    else:
        current_app.logger.info("%s rejected: %s", action, exc)
    return _error(str(exc) or f"{action} failed.", status)


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _require(value: Optional[str], message: str) -> Tuple[Optional[str], Optional[Any]]:
    if not value:
        return None, _error(message, 400)
    return value, None


# ---------------- ingestion ----------------
@bp.route("/upload-script", methods=["POST"])
def upload_script():
    if not request.content_type or "multipart/form-data" not in request.content_type:
        return _error("Use multipart/form-data with file + projectName.", 400)

    project_name = _clean(request.form.get("projectName"))
    if not project_name:
        return _error("Please provide a project name.", 400)

    upload = request.files.get("file")
    if upload is None or not upload.filename:
        return _error("No file found in upload.", 400)

    choices = {slot: request.form.get(slot) for slot in ENGINE_CONFIG_SLOTS if request.form.get(slot)}
    try:
        result = ingest_script(get_orchestrator(), upload.read(), upload.filename, project_name, choices)
    except HANDLED_ERRORS as exc:
        return _failure(exc, "Script ingestion")
    except Exception:  # pragma: no cover
        current_app.logger.exception("Unexpected error during script ingestion")
        return _error("AI parsing failed.", 500)
    return jsonify(result.to_dict())


# ---------------- projects ----------------
@bp.route("/projects", methods=["GET"])
def list_projects():
    projects = get_orchestrator().projects.list_projects()
    return jsonify({"projects": [meta.to_dict() for meta in projects]})


@bp.route("/projects", methods=["DELETE"])
def delete_project():
    project_id, missing = _require(_clean(request.args.get("id")), "Missing project id.")
    if missing:
        return missing
    get_orchestrator().projects.delete_project(project_id)
    return jsonify({"ok": True})


@bp.route("/project", methods=["GET"])
def get_project():
    project_id, missing = _require(_clean(request.args.get("id")), "Missing project id.")
    if missing:
        return missing

    orchestrator = get_orchestrator()
    repository = orchestrator.projects
    canon = repository.load_canon_payload(project_id)
    if canon is None:
        return _error(f"No IP Bible found for project {project_id}.", 404)

    hero = repository.load_hero(project_id)
    script = repository.load_script(project_id)
    return jsonify(
        {
            "ipBible": canon,
            "hero": hero.to_dict() if hero else None,
            "script": script.to_dict() if script else None,
            "engines": orchestrator.project_engines(project_id).to_dict(),
        }
    )


@bp.route("/project-bible", methods=["GET"])
def get_project_bible():
    project_id, missing = _require(_clean(request.args.get("projectId")), "Missing projectId.")
    if missing:
        return missing
    canon = get_orchestrator().projects.load_canon_payload(project_id)
    if canon is None:
        return _error(f"No IP Bible found for project {project_id}.", 404)
    return jsonify({"ipBible": canon})


@bp.route("/hero-image", methods=["GET"])
def get_hero_image():
    project_id, missing = _require(_clean(request.args.get("projectId")), "Missing projectId.")
    if missing:
        return missing
    hero = get_orchestrator().projects.load_hero(project_id)
    if hero is None:
        return _error("No hero image for this project.", 404)
    return jsonify(hero.to_dict())


@bp.route("/project-hero-image", methods=["GET"])
def get_project_hero_image():
    project_id, missing = _require(_clean(request.args.get("projectId")), "Missing projectId.")
    if missing:
        return missing
    hero = get_orchestrator().projects.load_hero(project_id)
    return jsonify({"hero": hero.to_dict() if hero else None})


# ---------------- chat ----------------
@bp.route("/ip-chat", methods=["GET"])
def chat_history():
    project_id, missing = _require(_clean(request.args.get("projectId")), "Missing projectId.")
    if missing:
        return missing
    mode = normalize_mode(request.args.get("mode"))
    messages = get_orchestrator().list_history(project_id, mode)
    return jsonify({"projectId": project_id, "mode": mode, "messages": messages})


@bp.route("/ip-chat", methods=["POST"])
def chat():
    payload = _json_body()
    project_id, missing = _require(_clean(payload.get("projectId")), "Missing projectId.")
    if missing:
        return missing

    messages = payload.get("messages")
    if not isinstance(messages, list) or not messages:
        return _error("messages must be a non-empty array.", 400)

    try:
        result = get_orchestrator().chat(
            project_id,
            payload.get("mode") or "copilot",
            messages,
            engine_id=_clean(payload.get("engineId")) or None,
        )
    except HANDLED_ERRORS as exc:
        return _failure(exc, "Chat")
    except Exception:  # pragma: no cover
        current_app.logger.exception("Unexpected error during chat")
        return _error("Chat failed.", 500)
    return jsonify(result.to_dict())


# ---------------- images ----------------
def _generate_entity_image(kind: str):
    payload = _json_body()
    project_id, missing = _require(_clean(payload.get("projectId")), "Missing projectId in request body.")
    if missing:
        return missing
    entity_id, missing = _require(_clean(payload.get(f"{kind}Id")), f"Missing {kind}Id in request body.")
    if missing:
        return missing

    try:
        record = get_orchestrator().generate_entity_image(
            project_id,
            kind,
            entity_id,
            name=_clean(payload.get("name")) or None,
            description=_clean(payload.get("description")) or None,
            engine_id=_clean(payload.get("engineId")) or None,
        )
    except HANDLED_ERRORS as exc:
        return _failure(exc, f"{kind.capitalize()} image generation")
    except Exception:  # pragma: no cover
        current_app.logger.exception("Unexpected error generating %s image", kind)
        return _error(f"{kind.capitalize()} image generation failed.", 500)
    return jsonify(record.to_dict())


@bp.route("/generate-character-image", methods=["POST"])
def generate_character_image():
    return _generate_entity_image("character")


@bp.route("/generate-location-image", methods=["POST"])
def generate_location_image():
    return _generate_entity_image("location")


@bp.route("/project-images", methods=["GET"])
def project_images():
    project_id = _clean(request.args.get("projectId"))
    kind = IMAGE_KINDS.get(_clean(request.args.get("kind")))
    if not project_id or not kind:
        return _error("Missing projectId or kind in query string.", 400)
    return jsonify({"images": get_orchestrator().projects.entity_images(project_id, kind)})


@bp.route("/upload-location-image", methods=["POST"])
def upload_location_image():
    project_id, missing = _require(_clean(request.form.get("projectId")), "Missing projectId.")
    if missing:
        return missing
    index = _clean(request.form.get("index"))
    if not index:
        return _error("Missing index.", 400)
    try:
        index_value = int(index)
    except ValueError:
        return _error("index must be a number.", 400)

    upload = request.files.get("file")
    if upload is None:
        return _error("No file uploaded.", 400)

    try:
        url = get_orchestrator().upload_entity_image(
            project_id,
            "location",
            str(index_value),
            upload.read(),
            upload.mimetype,
        )
    except HANDLED_ERRORS as exc:
        return _failure(exc, "Location image upload")
    return jsonify({"url": url})


# ---------------- engines ----------------
@bp.route("/engines/catalog", methods=["GET"])
def engine_catalog():
    registry = get_orchestrator().registry
    return jsonify(
        {
            "engines": [engine.to_dict() for engine in registry.all()],
            "defaults": {capability: registry.default_for(capability) for capability in CAPABILITIES},
        }
    )


@bp.route("/engines", methods=["GET"])
def get_engines():
    project_id, missing = _require(_clean(request.args.get("projectId")), "Missing projectId.")
    if missing:
        return missing
    orchestrator = get_orchestrator()
    return jsonify(
        {
            "projectId": project_id,
            "engines": orchestrator.project_engines(project_id).to_dict(),
            "stored": orchestrator.projects.load_engine_config(project_id) or {},
        }
    )


@bp.route("/engines", methods=["PUT"])
def update_engines():
    payload = _json_body()
    project_id, missing = _require(_clean(payload.get("projectId")), "Missing projectId.")
    if missing:
        return missing
    changes = {slot: payload[slot] for slot in ENGINE_CONFIG_SLOTS if slot in payload}
    try:
        engines = get_orchestrator().update_project_engines(project_id, changes)
    except HANDLED_ERRORS as exc:
        return _failure(exc, "Engine update")
    return jsonify({"projectId": project_id, "engines": engines.to_dict()})
