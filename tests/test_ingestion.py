import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from ipbible import create_app
from ipbible.config import TestConfig
from ipbible.extensions import db
from ipbible.services.conversation import ConversationManager
from ipbible.services.documents import UnsupportedFormat
from ipbible.services.engines import EngineRegistry
from ipbible.services.ingestion import build_partial_engine_config, ingest_script
from ipbible.services.orchestrator import GenerationOrchestrator
from ipbible.services.projects import ProjectRepository
from ipbible.services.providers import GeneratedImage
from ipbible.storage import LocalObjectStore, RecordStore

CANON_JSON = """Here is the bible:
{
  "plot": {"title": "Night Shift", "logline": "A nurse sees ghosts.", "synopsis": "Ward 9 never sleeps."},
  "characters": {
    "list": [
      {"id": "mara", "name": "Mara Voss", "role": "Protagonist", "bio": "A night nurse."},
      {"id": "hale", "name": "Doctor Hale", "role": "Mentor", "bio": "Sees too much."}
    ],
    "byId": {
      "mara": {"id": "mara", "name": "Mara Voss", "shortBio": "A night nurse.", "keyScenes": ["The first ghost"]}
    }
  },
  "locations": {
    "list": [{"id": "ward-9", "name": "Ward 9", "placeType": "Hospital ward"}],
    "byId": {"ward-9": {"id": "ward-9", "name": "Ward 9", "moodLine": "Humming lights"}}
  },
  "artStyle": {"aesthetic": "Neon noir", "palette": "#0a1018, #ffd16f"},
  "worldRules": {"physicsMagic": "Ghosts linger until remembered.", "technology": "Present day", "society": "Hospital hierarchy"}
}"""


class ScriptedTextClient:
    """Answers the extraction call with canon JSON and chat calls with a fixed reply."""

    def __init__(self):
        self.calls = []

    def send_chat(self, provider, model, messages, options=None):
        self.calls.append((provider, model, list(messages)))
        if len(self.calls) == 1:
            return CANON_JSON
        return f"Reply {len(self.calls) - 1}"


class DummyImageClient:
    def __init__(self):
        self.calls = []

    def generate_image(self, provider, model, prompt, size="1024x1024", options=None):
        self.calls.append((provider, model, prompt))
        return GeneratedImage(data=b"hero", mime_type="image/png")


@pytest.fixture
def app_ctx():
    app = create_app(TestConfig)
    ctx = app.app_context()
    ctx.push()
    db.create_all()
    yield app
    db.session.remove()
    db.drop_all()
    ctx.pop()


@pytest.fixture
def orchestrator(app_ctx, tmp_path):
    records = RecordStore()
    return GenerationOrchestrator(
        EngineRegistry(),
        ScriptedTextClient(),
        DummyImageClient(),
        ProjectRepository(records),
        LocalObjectStore(tmp_path, "/media"),
        ConversationManager(records),
    )


def _script(words=500):
    return " ".join(f"word{index}" for index in range(words)).encode("utf-8")


def test_upload_then_chat_end_to_end(orchestrator):
    result = ingest_script(
        orchestrator,
        _script(),
        "night-shift.txt",
        "Night Shift",
        {"canonEngineId": "openai-gpt-5.1", "imageEngineId": "openai-gpt-5-mini"},
    )

    payload = result.to_dict()
    assert payload["summary"] == {"wordCount": 500, "characters": 2, "locations": 1}
    assert payload["projectName"] == "Night Shift"
    assert payload["hero"]["source"] == "ai"
    assert payload["engines"]["canonEngineId"] == "openai-gpt-5.1"
    assert payload["engines"]["copilotEngineId"] == "openai-gpt-5.1"
    assert payload["script"]["filename"] == "night-shift.txt"

    bible = payload["ipBible"]
    for section in ("characters", "locations"):
        ids = [entry["id"] for entry in bible[section]["list"]]
        assert ids == list(bible[section]["byId"])
    assert bible["characters"]["byId"]["hale"]["shortBio"] == "Sees too much."

    text_client = orchestrator.text_client
    assert text_client.calls[0][:2] == ("openai", "gpt-5.1")
    assert orchestrator.image_client.calls[0][:2] == ("openai", "gpt-image-1")

    project_id = result.project_id
    projects = orchestrator.projects
    assert [meta.id for meta in projects.list_projects()] == [project_id]
    assert projects.load_engine_config(project_id) == {
        "canonEngineId": "openai-gpt-5.1",
        "imageEngineId": "openai-gpt-5-mini",
        "globalEngineId": "openai-gpt-5.1",
    }
    assert projects.load_hero(project_id).url == payload["hero"]["url"]

    first = orchestrator.chat(project_id, "canon", [{"role": "user", "content": "Who is Mara?"}])
    assert first.reply == "Reply 1"
    assert len(first.history) == 2

    second = orchestrator.chat(project_id, "canon", [{"role": "user", "content": "And Hale?"}])
    assert len(second.history) == 4
    chat_messages = text_client.calls[2][2]
    assert "Mara Voss" in chat_messages[0].content
    assert "SCRIPT EXCERPT" in chat_messages[1].content
    assert [message.content for message in chat_messages[2:]] == ["Who is Mara?", "Reply 1", "And Hale?"]


def test_unknown_engine_choice_is_dropped(app_ctx):
    partial = build_partial_engine_config(
        EngineRegistry(), {"globalEngineId": "retired-engine", "copilotEngineId": "gpt-5-mini", "imageEngineId": " "}
    )

    assert partial == {"copilotEngineId": "openai-gpt-5-mini"}


def test_unsupported_upload_stores_nothing(orchestrator):
    with pytest.raises(UnsupportedFormat):
        ingest_script(orchestrator, b"binary", "night-shift.doc", "Night Shift")

    assert orchestrator.projects.list_projects() == []
    assert orchestrator.text_client.calls == []
