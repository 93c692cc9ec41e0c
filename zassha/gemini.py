import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Optional

from zassha.config import settings
from zassha.errors import FileProcessingFailed, FileProcessingTimeout
from zassha.events import TokenUsage
from zassha.polling import PollPolicy, PollStatus, poll_until

logger = logging.getLogger(__name__)

TEMPERATURE = 0.4
MAX_OUTPUT_TOKENS = 4000

DEFAULT_VIDEO_MIME = "video/mp4"
MIME_TYPES = {
    ".mp4": "video/mp4",
    ".m4v": "video/mp4",
    ".mov": "video/quicktime",
    ".webm": "video/webm",
    ".mkv": "video/x-matroska",
    ".avi": "video/x-msvideo",
    ".wmv": "video/x-ms-wmv",
    ".mpeg": "video/mpeg",
    ".mpg": "video/mpeg",
    ".3gp": "video/3gpp",
    ".flv": "video/x-flv",
}

STATE_ACTIVE = "ACTIVE"
STATE_FAILED = "FAILED"


def mime_type_for(path: Path | str) -> str:
    """Lookup by extension only; the bytes are never sniffed."""
    return MIME_TYPES.get(Path(path).suffix.lower(), DEFAULT_VIDEO_MIME)


@dataclass
class RemoteFile:
    name: str
    uri: Optional[str]
    mime_type: str
    state: str
    error_message: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.state == STATE_ACTIVE

    @property
    def is_failed(self) -> bool:
        return self.state == STATE_FAILED


@dataclass
class GenerationChunk:
    text: Optional[str] = None
    usage: Optional[TokenUsage] = None


def _state_name(state: Any) -> str:
    if state is None:
        return "STATE_UNSPECIFIED"
    return str(getattr(state, "name", state)).upper()


def _to_remote_file(file: Any, fallback_mime: str) -> RemoteFile:
    error = getattr(file, "error", None)
    return RemoteFile(
        name=file.name,
        uri=getattr(file, "uri", None),
        mime_type=getattr(file, "mime_type", None) or fallback_mime,
        state=_state_name(getattr(file, "state", None)),
        error_message=getattr(error, "message", None) if error else None,
    )


def usage_from_metadata(metadata: Any) -> Optional[TokenUsage]:
    if metadata is None:
        return None
    return TokenUsage(
        input_tokens=getattr(metadata, "prompt_token_count", None) or 0,
        output_tokens=getattr(metadata, "candidates_token_count", None) or 0,
        total_tokens=getattr(metadata, "total_token_count", None) or 0,
    )


class GeminiVideoClient:
    """
    Thin async wrapper over the google-genai Files and streaming generation APIs.
    The pipeline only talks to this surface, so tests substitute an object with the same methods.
    """

    def __init__(self, api_key: str, model: Optional[str] = None, client: Any = None):
        self.model = model or settings.GEMINI_MODEL
        if client is None:
            from google import genai

            client = genai.Client(api_key=api_key)
        self._client = client

    async def upload(self, path: Path, display_name: str, mime_type: str) -> RemoteFile:
        from google.genai import types

        uploaded = await self._client.aio.files.upload(
            file=str(path),
            config=types.UploadFileConfig(mime_type=mime_type, display_name=display_name),
        )
        return _to_remote_file(uploaded, mime_type)

    async def refresh(self, remote: RemoteFile) -> RemoteFile:
        latest = await self._client.aio.files.get(name=remote.name)
        return _to_remote_file(latest, remote.mime_type)

    async def delete(self, remote: RemoteFile) -> None:
        await self._client.aio.files.delete(name=remote.name)

    async def stream(self, prompt: str, remote: RemoteFile) -> AsyncIterator[GenerationChunk]:
        from google.genai import types

        contents = [
            types.Content(
                role="user",
                parts=[
                    types.Part(text=prompt),
                    types.Part(file_data=types.FileData(file_uri=remote.uri, mime_type=remote.mime_type)),
                ],
            )
        ]
        response = await self._client.aio.models.generate_content_stream(
            model=self.model,
            contents=contents,
            config=types.GenerateContentConfig(temperature=TEMPERATURE, max_output_tokens=MAX_OUTPUT_TOKENS),
        )
        async for chunk in response:
            yield GenerationChunk(text=chunk.text or None, usage=usage_from_metadata(chunk.usage_metadata))


_model_client: Optional[GeminiVideoClient] = None


def get_model_client() -> GeminiVideoClient:
    """
    Lazily construct the Gemini client so requests reuse one connection pool.
    """
    global _model_client
    if _model_client is None:
        if not settings.GEMINI_API_KEY:
            raise RuntimeError("GEMINI_API_KEY is not set")
        _model_client = GeminiVideoClient(api_key=settings.GEMINI_API_KEY)
    return _model_client


async def submit_segment(client, segment_path: Path, display_name: Optional[str] = None) -> RemoteFile:
    mime_type = mime_type_for(segment_path)
    remote = await client.upload(segment_path, display_name or segment_path.name, mime_type)
    logger.info("Submitted %s as %s (%s, state=%s)", segment_path.name, remote.name, mime_type, remote.state)
    return remote


async def await_ready(
    client,
    remote: RemoteFile,
    policy: Optional[PollPolicy] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep=None,
) -> RemoteFile:
    """Poll until the remote file is ACTIVE. Raises FileProcessingFailed or FileProcessingTimeout."""
    policy = policy or PollPolicy(settings.FILE_POLL_INTERVAL_SEC, settings.FILE_READY_TIMEOUT_SEC)
    kwargs = {"clock": clock}
    if sleep is not None:
        kwargs["sleep"] = sleep
    outcome = await poll_until(
        remote,
        client.refresh,
        is_ready=lambda f: f.is_active,
        is_failed=lambda f: f.is_failed,
        policy=policy,
        **kwargs,
    )
    if outcome.status is PollStatus.FAILED:
        raise FileProcessingFailed(outcome.value.error_message)
    if outcome.status is PollStatus.TIMED_OUT:
        logger.warning("Remote file %s still %s after %.1fs", remote.name, outcome.value.state, outcome.waited)
        raise FileProcessingTimeout()
    logger.info("Remote file %s ready after %.1fs", remote.name, outcome.waited)
    return outcome.value
