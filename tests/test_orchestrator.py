import logging
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
from ipbible.services.errors import InvalidStructuredOutput, NoImageData, ProviderTimeout
from ipbible.services.orchestrator import ChatRequestError, GenerationOrchestrator
from ipbible.services.projects import (
    EntityImageRecord,
    ProjectMeta,
    ProjectNotFound,
    ProjectRepository,
    ScriptRecord,
    chat_key,
)
from ipbible.services.providers import GeneratedImage
from ipbible.services.rasterizer import RasterizationError
from ipbible.storage import LocalObjectStore, RecordStore

CANON_JSON = (
    '```json\n{"plot": {"title": "Night Shift", "logline": "A nurse sees ghosts."},'
    ' "characters": {"list": [{"id": "mara", "name": "Mara Voss"}]},'
    ' "locations": {"list": [{"id": "ward-9", "name": "Ward 9"}]},'
    ' "artStyle": {"aesthetic": "Neon noir", "palette": "#0a1018"}}\n```'
)


class DummyTextClient:
    def __init__(self, replies=None, error=None):
        self.replies = list(replies or ["Mara leads the ward."])
        self.error = error
        self.calls = []

    def send_chat(self, provider, model, messages, options=None):
        self.calls.append({"provider": provider, "model": model, "messages": list(messages), "options": options})
        if self.error is not None:
            raise self.error
        return self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]


class DummyImageClient:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def generate_image(self, provider, model, prompt, size="1024x1024", options=None):
        self.calls.append({"provider": provider, "model": model, "prompt": prompt, "size": size})
        if self.error is not None:
            raise self.error
        return GeneratedImage(data=b"ai-image", mime_type="image/png")


class DummyRasterizer:
    def __init__(self, error=None):
        self.error = error
        self.rasterized = []

    def rasterize(self, pdf_url, pages="1"):
        self.rasterized.append((pdf_url, pages))
        if self.error is not None:
            raise self.error
        return "https://pdf-temp.example/page1.png"

    def fetch_image(self, url):
        return b"pdf-page-image"


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


def build_orchestrator(tmp_path, *, text_client=None, image_client=None, rasterizer=None, window=40):
    records = RecordStore()
    return GenerationOrchestrator(
        EngineRegistry(),
        text_client or DummyTextClient(),
        image_client or DummyImageClient(),
        ProjectRepository(records),
        LocalObjectStore(tmp_path, "/media"),
        ConversationManager(records, window=window),
        rasterizer=rasterizer,
        public_base_url="https://bible.test",
    )


def seed_project(orchestrator, project_id="p1", engines=None, script_text="INT. WARD - NIGHT"):
    projects = orchestrator.projects
    projects.save_canon(project_id, StructuredCanon.from_dict({"plot": {"title": "Night Shift"}}))
    projects.save_script(project_id, ScriptRecord(filename="night.txt", text=script_text, created_at="now"))
    if engines is not None:
        projects.save_engine_config(project_id, engines)
    projects.add_project(ProjectMeta(id=project_id, name="Night Shift", created_at="now"))


# ---------------- canon extraction ----------------
def test_extract_canon_parses_fenced_reply(app_ctx, tmp_path):
    text_client = DummyTextClient([CANON_JSON])
    orchestrator = build_orchestrator(tmp_path, text_client=text_client)

    canon = orchestrator.extract_canon("FADE IN: " + "word " * 10, "openai-gpt-5.1")

    assert canon.title == "Night Shift"
    assert list(canon.characters.by_id) == ["mara"]
    call = text_client.calls[0]
    assert (call["provider"], call["model"]) == ("openai", "gpt-5.1")
    assert call["messages"][0].role == "system"


def test_extract_canon_falls_back_to_default_engine(app_ctx, tmp_path):
    text_client = DummyTextClient([CANON_JSON])
    orchestrator = build_orchestrator(tmp_path, text_client=text_client)

    orchestrator.extract_canon("script", "retired-engine")

    assert text_client.calls[0]["model"] == "gemini-3-pro-preview"


def test_extract_canon_rejects_unparseable_reply(app_ctx, tmp_path):
    orchestrator = build_orchestrator(tmp_path, text_client=DummyTextClient(["I cannot do that."]))

    with pytest.raises(InvalidStructuredOutput):
        orchestrator.extract_canon("script")


# ---------------- chat ----------------
def test_chat_uses_mode_engine_and_bounded_window(app_ctx, tmp_path):
    text_client = DummyTextClient(["Mara."])
    orchestrator = build_orchestrator(tmp_path, text_client=text_client, window=4)
    seed_project(orchestrator, engines={"globalEngineId": "gemini-3-preview", "canonEngineId": "openai-gpt-5-mini"})
    stored = [{"role": "user", "content": f"q{index}"} for index in range(6)]
    orchestrator.projects.records.set(chat_key("p1", "canon"), stored)

    result = orchestrator.chat("p1", "canon", [{"role": "user", "content": "Who leads?"}])

    call = text_client.calls[0]
    assert call["model"] == "gpt-5-mini"
    roles = [message.role for message in call["messages"]]
    assert roles[:2] == ["system", "system"]
    assert [message.content for message in call["messages"][2:]] == ["q2", "q3", "q4", "q5", "Who leads?"]
    assert result.engine_id == "openai-gpt-5-mini"
    assert result.reply == "Mara."
    assert len(result.history) == 8
    assert result.to_dict()["history"][-1] == {"role": "assistant", "content": "Mara."}


def test_copilot_mode_follows_global_engine(app_ctx, tmp_path):
    text_client = DummyTextClient(["Pitch."])
    orchestrator = build_orchestrator(tmp_path, text_client=text_client)
    seed_project(orchestrator, engines={"globalEngineId": "openai-gpt-5.1", "canonEngineId": "gemini-3-preview"})

    result = orchestrator.chat("p1", "brainstorm", [{"role": "user", "content": "Sequel?"}])

    assert result.mode == "copilot"
    assert text_client.calls[0]["model"] == "gpt-5.1"
    assert orchestrator.list_history("p1", "copilot")[-1]["content"] == "Pitch."
    assert orchestrator.list_history("p1", "canon") == []


def test_chat_without_stored_engines_uses_defaults(app_ctx, tmp_path):
    text_client = DummyTextClient(["Hi."])
    orchestrator = build_orchestrator(tmp_path, text_client=text_client)
    seed_project(orchestrator)

    orchestrator.chat("p1", "canon", [{"role": "user", "content": "Hello"}])

    assert text_client.calls[0]["provider"] == "gemini"


def test_chat_rejects_empty_turn_and_unknown_project(app_ctx, tmp_path):
    orchestrator = build_orchestrator(tmp_path)

    with pytest.raises(ChatRequestError):
        orchestrator.chat("p1", "canon", [{"role": "user", "content": ""}])
    with pytest.raises(ProjectNotFound):
        orchestrator.chat("missing", "canon", [{"role": "user", "content": "Hello"}])


def test_chat_failure_leaves_history_unchanged(app_ctx, tmp_path):
    orchestrator = build_orchestrator(tmp_path, text_client=DummyTextClient(error=ProviderTimeout("slow")))
    seed_project(orchestrator)
    orchestrator.projects.records.set(chat_key("p1", "canon"), [{"role": "user", "content": "earlier"}])

    with pytest.raises(ProviderTimeout):
        orchestrator.chat("p1", "canon", [{"role": "user", "content": "Hello"}])

    assert orchestrator.list_history("p1", "canon") == [{"role": "user", "content": "earlier"}]


# ---------------- hero ----------------
def test_non_pdf_upload_never_rasterizes(app_ctx, tmp_path):
    rasterizer = DummyRasterizer()
    orchestrator = build_orchestrator(tmp_path, rasterizer=rasterizer)

    hero = orchestrator.generate_hero({}, "p1", "txt", b"plain text", "openai-gpt-5.1")

    assert rasterizer.rasterized == []
    assert hero.source == "ai"
    assert hero.engine_id == "openai-gpt-5.1"
    assert orchestrator.projects.load_hero("p1") == hero


def test_pdf_hero_is_preferred_when_rasterization_works(app_ctx, tmp_path):
    rasterizer = DummyRasterizer()
    image_client = DummyImageClient()
    orchestrator = build_orchestrator(tmp_path, image_client=image_client, rasterizer=rasterizer)

    hero = orchestrator.generate_hero({}, "p1", "pdf", b"%PDF-1.4", None)

    assert hero.source == "pdf"
    assert hero.url.startswith("/media/projects/p1/hero/pdf-hero-")
    pdf_url, pages = rasterizer.rasterized[0]
    assert pdf_url.startswith("https://bible.test/media/projects/p1/source/pdf-")
    assert pages == "1"
    assert image_client.calls == []
    assert (tmp_path / hero.url[len("/media/"):]).read_bytes() == b"pdf-page-image"


def test_pdf_failure_falls_back_to_ai(app_ctx, tmp_path):
    image_client = DummyImageClient()
    orchestrator = build_orchestrator(
        tmp_path, image_client=image_client, rasterizer=DummyRasterizer(error=RasterizationError("boom"))
    )

    hero = orchestrator.generate_hero({"plot": {"title": "Night Shift"}}, "p1", "pdf", b"%PDF-1.4", None)

    assert hero.source == "ai"
    assert image_client.calls[0]["model"] == "gemini-3-pro-image-preview"
    assert 'called "Night Shift"' in image_client.calls[0]["prompt"]


def test_hero_fallback_is_logged_on_the_app_logger(app_ctx, tmp_path, caplog):
    orchestrator = build_orchestrator(tmp_path, rasterizer=DummyRasterizer(error=RasterizationError("boom")))

    with caplog.at_level(logging.WARNING, logger=app_ctx.logger.name):
        orchestrator.generate_hero({}, "p1", "pdf", b"%PDF-1.4", None)

    warnings = [record for record in caplog.records if record.levelno == logging.WARNING]
    assert [record.name for record in warnings] == [app_ctx.logger.name]
    assert "PDF hero extraction failed for project p1" in warnings[0].getMessage()


def test_hero_is_none_when_every_path_fails(app_ctx, tmp_path):
    orchestrator = build_orchestrator(
        tmp_path,
        image_client=DummyImageClient(error=NoImageData("nothing")),
        rasterizer=DummyRasterizer(error=RasterizationError("boom")),
    )

    hero = orchestrator.generate_hero({}, "p1", "pdf", b"%PDF-1.4", None)

    assert hero is None
    assert orchestrator.projects.load_hero("p1") is None


# ---------------- entity images & engines ----------------
def test_generate_entity_image_uses_project_image_engine(app_ctx, tmp_path):
    image_client = DummyImageClient()
    orchestrator = build_orchestrator(tmp_path, image_client=image_client)
    seed_project(orchestrator, engines={"globalEngineId": "gemini-3-preview", "imageEngineId": "openai-gpt-5-mini"})

    record = orchestrator.generate_entity_image(
        "p1", "character", "mara", name="Mara Voss", description="scarred night nurse"
    )

    assert isinstance(record, EntityImageRecord)
    assert record.engine_id == "openai-gpt-5-mini"
    assert image_client.calls[0]["model"] == "gpt-image-1"
    assert image_client.calls[0]["prompt"].startswith("Cinematic character portrait of Mara Voss.")
    assert record.url.startswith("/media/projects/p1/characters/mara-")
    assert orchestrator.projects.entity_images("p1", "character") == {"mara": record.url}
    assert record.to_dict()["characterId"] == "mara"


def test_upload_entity_image_records_url_by_index(app_ctx, tmp_path):
    orchestrator = build_orchestrator(tmp_path)

    url = orchestrator.upload_entity_image("p1", "location", "2", b"jpeg-bytes", "image/jpeg")

    assert url.endswith(".jpg")
    assert orchestrator.projects.entity_images("p1", "location") == {"2": url}


def test_update_project_engines_merges_and_fills(app_ctx, tmp_path):
    orchestrator = build_orchestrator(tmp_path)
    seed_project(orchestrator, engines={"globalEngineId": "openai-gpt-5.1"})

    config = orchestrator.update_project_engines("p1", {"copilotEngineId": "gemini-3-pro-preview"})

    assert config.copilot_engine_id == "gemini-3-preview"
    assert config.canon_engine_id == "openai-gpt-5.1"
    assert orchestrator.projects.load_engine_config("p1") == {
        "globalEngineId": "openai-gpt-5.1",
        "copilotEngineId": "gemini-3-preview",
    }


def test_delete_project_removes_every_record(app_ctx, tmp_path):
    orchestrator = build_orchestrator(tmp_path)
    seed_project(orchestrator, engines={"globalEngineId": "openai-gpt-5.1"})
    seed_project(orchestrator, project_id="p2")
    orchestrator.chat("p1", "canon", [{"role": "user", "content": "Hello"}])
    orchestrator.generate_hero({}, "p1")
    orchestrator.generate_entity_image("p1", "character", "mara")

    assert orchestrator.projects.delete_project("p1")

    projects = orchestrator.projects
    assert [meta.id for meta in projects.list_projects()] == ["p2"]
    assert projects.load_canon_payload("p1") is None
    assert projects.load_script("p1") is None
    assert projects.load_engine_config("p1") is None
    assert projects.load_hero("p1") is None
    assert projects.entity_images("p1", "character") == {}
    assert orchestrator.list_history("p1", "canon") == []
    assert projects.records.get("ipbible:images:p1:character:mara") is None
    assert projects.load_canon_payload("p2") is not None
