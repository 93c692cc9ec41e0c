import itertools
from dataclasses import replace
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from zassha import gemini
from zassha.config import settings
from zassha.events import TokenUsage
from zassha.gemini import GenerationChunk, RemoteFile
from zassha.main import create_app
from zassha.routes.explain import get_analysis_client
from zassha.storage import ChunkStore, FileSessionStore, get_chunk_store


class FakeModelClient:
    """Stands in for GeminiVideoClient: files turn ACTIVE after `ready_after` refreshes."""

    def __init__(self, replies=None, ready_after: int = 1, final_state: str = "ACTIVE", error_message=None):
        self.replies = list(replies or [["## Overview\n", "Opened the dashboard."]])
        self.ready_after = ready_after
        self.final_state = final_state
        self.error_message = error_message
        self.uploaded: list[tuple[Path, str, str]] = []
        self.prompts: list[str] = []
        self.deleted: list[str] = []
        self.refreshes = 0
        self._names = itertools.count()

    async def upload(self, path, display_name, mime_type):
        self.uploaded.append((Path(path), display_name, mime_type))
        return RemoteFile(
            name=f"files/{next(self._names)}",
            uri=f"https://example.invalid/{display_name}",
            mime_type=mime_type,
            state="PROCESSING",
        )

    async def refresh(self, remote):
        self.refreshes += 1
        if self.refreshes >= self.ready_after:
            return replace(remote, state=self.final_state, error_message=self.error_message)
        return remote

    async def delete(self, remote):
        self.deleted.append(remote.name)

    async def stream(self, prompt, remote):
        self.prompts.append(prompt)
        segment = len(self.prompts) - 1
        pieces = self.replies[min(segment, len(self.replies) - 1)]
        for number, piece in enumerate(pieces, start=1):
            yield GenerationChunk(
                text=piece,
                usage=TokenUsage(
                    input_tokens=100 * (segment + 1),
                    output_tokens=10 * number,
                    total_tokens=100 * (segment + 1) + 10 * number,
                ),
            )


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setattr(settings, "WORK_DIR", str(tmp_path / "runs"))
    monkeypatch.setattr(settings, "GEMINI_API_KEY", "test-key")
    monkeypatch.setattr(settings, "SEGMENT_LEN_SEC", 0)
    monkeypatch.setattr(settings, "FILE_POLL_INTERVAL_SEC", 0.0)
    monkeypatch.setattr(settings, "UPLOAD_SESSION_TTL_SEC", 0)
    monkeypatch.setattr(gemini, "_model_client", None)
    get_chunk_store.cache_clear()
    yield
    get_chunk_store.cache_clear()


@pytest.fixture
def chunk_store(tmp_path) -> ChunkStore:
    return ChunkStore(FileSessionStore(tmp_path / "sessions"))


@pytest.fixture
def fake_model() -> FakeModelClient:
    return FakeModelClient()


@pytest.fixture
def app(chunk_store, fake_model):
    application = create_app()
    application.dependency_overrides[get_chunk_store] = lambda: chunk_store
    application.dependency_overrides[get_analysis_client] = lambda: fake_model
    return application


@pytest.fixture
def api(app) -> TestClient:
    with TestClient(app) as client:
        yield client


@pytest.fixture
def video_file(tmp_path):
    def _make(name: str = "recording.mp4", size: int = 4096) -> Path:
        path = tmp_path / name
        path.write_bytes(bytes(i % 251 for i in range(size)))
        return path

    return _make
