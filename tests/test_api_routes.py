import io
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from ipbible import create_app
from ipbible.config import TestConfig
from ipbible.extensions import db
from ipbible.services.canon import StructuredCanon
from ipbible.services.conversation import ConversationManager
from ipbible.services.engines import EngineRegistry
from ipbible.services.errors import ProviderRejected, ProviderTimeout
from ipbible.services.orchestrator import GenerationOrchestrator
from ipbible.services.projects import HeroRecord, ProjectMeta, ProjectRepository
from ipbible.services.providers import GeneratedImage
from ipbible.storage import LocalObjectStore, RecordStore

CANON_JSON = (
    '{"plot": {"title": "Night Shift", "logline": "A nurse sees ghosts."},'
    ' "characters": {"list": [{"id": "mara", "name": "Mara Voss"}]},'
    ' "locations": {"list": [{"id": "ward-9", "name": "Ward 9"}]},'
    ' "artStyle": {"aesthetic": "Neon noir", "palette": "#0a1018"}}'
)


class DummyTextClient:
    def __init__(self):
        self.error = None
        self.calls = []

    def send_chat(self, provider, model, messages, options=None):
        self.calls.append((provider, model))
        if self.error is not None:
            raise self.error
        if messages[0].content.startswith('You are the "Living Bible" engine'):
            return CANON_JSON
        return "Mara runs Ward 9."


class DummyImageClient:
    def generate_image(self, provider, model, prompt, size="1024x1024", options=None):
        return GeneratedImage(data=b"generated-png", mime_type="image/png")


@pytest.fixture
def app_instance(tmp_path):
    app = create_app(TestConfig)
    app.config["MEDIA_ROOT"] = str(tmp_path)
    ctx = app.app_context()
    ctx.push()
    db.create_all()
    yield app
    db.session.remove()
    db.drop_all()
    ctx.pop()


@pytest.fixture
def text_client():
    return DummyTextClient()


@pytest.fixture
def orchestrator(app_instance, tmp_path, text_client):
    records = RecordStore()
    orchestrator = GenerationOrchestrator(
        EngineRegistry(),
        text_client,
        DummyImageClient(),
        ProjectRepository(records),
        LocalObjectStore(tmp_path, "/media"),
        ConversationManager(records),
    )
    app_instance.config["_ORCHESTRATOR_INSTANCE"] = orchestrator
    return orchestrator


@pytest.fixture
def client(app_instance, orchestrator):
    return app_instance.test_client()


def _upload(client, filename="night.txt", content=b"FADE IN: Mara walks Ward 9.", **fields):
    data = {"projectName": "Night Shift", "file": (io.BytesIO(content), filename)}
    data.update(fields)
    return client.post("/api/upload-script", data=data, content_type="multipart/form-data")


def _seed(orchestrator, project_id="p1"):
    orchestrator.projects.save_canon(project_id, StructuredCanon.from_dict({"plot": {"title": "Night Shift"}}))
    orchestrator.projects.add_project(ProjectMeta(id=project_id, name="Night Shift", created_at="now"))


def test_upload_then_chat_flow(client, text_client):
    response = _upload(client, canonEngineId="openai-gpt-5.1")

    assert response.status_code == 200
    payload = response.get_json()
    project_id = payload["projectId"]
    assert payload["summary"] == {"wordCount": 6, "characters": 1, "locations": 1}
    assert payload["ipBible"]["plot"]["title"] == "Night Shift"
    assert payload["hero"]["source"] == "ai"
    assert text_client.calls[0] == ("openai", "gpt-5.1")

    listing = client.get("/api/projects").get_json()
    assert [project["id"] for project in listing["projects"]] == [project_id]

    chat = client.post(
        "/api/ip-chat",
        json={"projectId": project_id, "mode": "canon", "messages": [{"role": "user", "content": "Who is Mara?"}]},
    )
    assert chat.status_code == 200
    assert chat.get_json()["reply"] == "Mara runs Ward 9."
    assert chat.get_json()["engineId"] == "openai-gpt-5.1"

    history = client.get(f"/api/ip-chat?projectId={project_id}&mode=canon").get_json()
    assert history["mode"] == "canon"
    assert [message["role"] for message in history["messages"]] == ["user", "assistant"]

    project = client.get(f"/api/project?id={project_id}").get_json()
    assert project["script"]["filename"] == "night.txt"
    assert project["engines"]["canonEngineId"] == "openai-gpt-5.1"

    bible = client.get(f"/api/project-bible?projectId={project_id}")
    assert bible.get_json()["ipBible"]["characters"]["list"][0]["id"] == "mara"

    hero = client.get(f"/api/hero-image?projectId={project_id}").get_json()
    media = client.get(hero["url"])
    assert media.status_code == 200
    assert media.data == b"generated-png"


def test_upload_validation_errors(client):
    assert client.post("/api/upload-script", json={"projectName": "x"}).status_code == 400
    missing_name = client.post(
        "/api/upload-script",
        data={"file": (io.BytesIO(b"text"), "night.txt")},
        content_type="multipart/form-data",
    )
    assert missing_name.status_code == 400

    legacy = _upload(client, filename="night.doc")
    assert legacy.status_code == 400
    assert ".docx" in legacy.get_json()["error"]


def test_chat_status_codes(client, orchestrator, text_client):
    _seed(orchestrator)
    body = {"projectId": "p1", "messages": [{"role": "user", "content": "Hi"}]}

    assert client.post("/api/ip-chat", json={"projectId": "p1", "messages": []}).status_code == 400
    assert client.post("/api/ip-chat", json={"projectId": "p1", "messages": [{"role": "user"}]}).status_code == 400
    assert client.post("/api/ip-chat", json={**body, "projectId": "missing"}).status_code == 404

    text_client.error = ProviderTimeout("slow")
    assert client.post("/api/ip-chat", json=body).status_code == 504

    text_client.error = ProviderRejected("gemini", 503, "overloaded")
    response = client.post("/api/ip-chat", json=body)
    assert response.status_code == 502
    assert "503" in response.get_json()["error"]


def test_missing_credentials_surface_as_server_error(app_instance):
    app_instance.config.pop("_ORCHESTRATOR_INSTANCE", None)
    client = app_instance.test_client()
    with app_instance.app_context():
        from ipbible.services.runtime import get_orchestrator

        _seed(get_orchestrator())

    response = client.post(
        "/api/ip-chat", json={"projectId": "p1", "messages": [{"role": "user", "content": "Hi"}]}
    )

    assert response.status_code == 500
    assert "GEMINI_API_KEY" in response.get_json()["error"]


def test_hero_image_missing_returns_404(client, orchestrator):
    _seed(orchestrator)

    assert client.get("/api/hero-image?projectId=p1").status_code == 404
    assert client.get("/api/hero-image").status_code == 400


def test_project_hero_image_wraps_the_record(client, orchestrator):
    _seed(orchestrator)

    assert client.get("/api/project-hero-image?projectId=p1").get_json() == {"hero": None}
    assert client.get("/api/project-hero-image").status_code == 400

    orchestrator.projects.save_hero("p1", HeroRecord(url="/media/projects/p1/hero/ai-hero-1.png", source="ai"))

    payload = client.get("/api/project-hero-image?projectId=p1").get_json()
    assert payload == {"hero": {"url": "/media/projects/p1/hero/ai-hero-1.png", "source": "ai"}}


def test_entity_images_and_listing(client, orchestrator):
    _seed(orchestrator)

    missing = client.post("/api/generate-character-image", json={"projectId": "p1"})
    assert missing.status_code == 400

    response = client.post(
        "/api/generate-character-image",
        json={"projectId": "p1", "characterId": "mara", "name": "Mara Voss", "engineId": "openai-gpt-5-mini"},
    )
    assert response.status_code == 200
    record = response.get_json()
    assert record["characterId"] == "mara"
    assert record["engineId"] == "openai-gpt-5-mini"

    location = client.post("/api/generate-location-image", json={"projectId": "p1", "locationId": "ward-9"})
    assert location.get_json()["locationId"] == "ward-9"

    upload = client.post(
        "/api/upload-location-image",
        data={"projectId": "p1", "index": "0", "file": (io.BytesIO(b"jpeg"), "ward.jpg", "image/jpeg")},
        content_type="multipart/form-data",
    )
    assert upload.status_code == 200

    characters = client.get("/api/project-images?projectId=p1&kind=characters").get_json()
    assert characters["images"] == {"mara": record["url"]}
    locations = client.get("/api/project-images?projectId=p1&kind=locations").get_json()
    assert set(locations["images"]) == {"ward-9", "0"}
    assert client.get("/api/project-images?projectId=p1&kind=props").status_code == 400


def test_engine_routes(client, orchestrator):
    _seed(orchestrator)

    catalog = client.get("/api/engines/catalog").get_json()
    assert [engine["id"] for engine in catalog["engines"]] == [
        "openai-gpt-5.1",
        "openai-gpt-5-mini",
        "gemini-3-preview",
    ]
    assert catalog["defaults"] == {"text": "gemini-3-preview", "image": "gemini-3-preview"}

    defaults = client.get("/api/engines?projectId=p1").get_json()
    assert defaults["stored"] == {}
    assert defaults["engines"]["imageEngineId"] == "gemini-3-preview"

    updated = client.put("/api/engines", json={"projectId": "p1", "globalEngineId": "openai-gpt-5.1"})
    assert updated.status_code == 200
    assert updated.get_json()["engines"]["copilotEngineId"] == "openai-gpt-5.1"

    rejected = client.put("/api/engines", json={"projectId": "p1", "imageEngineId": "mystery-engine"})
    assert rejected.status_code == 400
    assert client.get("/api/engines?projectId=p1").get_json()["stored"] == {"globalEngineId": "openai-gpt-5.1"}


def test_delete_project(client, orchestrator):
    _seed(orchestrator)
    _seed(orchestrator, "p2")

    assert client.delete("/api/projects").status_code == 400
    assert client.delete("/api/projects?id=p1").get_json() == {"ok": True}

    listing = client.get("/api/projects").get_json()
    assert [project["id"] for project in listing["projects"]] == ["p2"]
    assert client.get("/api/project?id=p1").status_code == 404


class ClosingClient:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


def test_close_orchestrator_releases_clients_and_clears_the_cache(app_instance, tmp_path):
    from ipbible.services.runtime import close_orchestrator

    text_client, image_client, rasterizer = ClosingClient(), ClosingClient(), ClosingClient()
    records = RecordStore()
    app_instance.config["_ORCHESTRATOR_INSTANCE"] = GenerationOrchestrator(
        EngineRegistry(),
        text_client,
        image_client,
        ProjectRepository(records),
        LocalObjectStore(tmp_path, "/media"),
        ConversationManager(records),
        rasterizer=rasterizer,
    )

    close_orchestrator(app_instance)
    close_orchestrator(app_instance)

    assert (text_client.closed, image_client.closed, rasterizer.closed) == (True, True, True)
    assert "_ORCHESTRATOR_INSTANCE" not in app_instance.config
