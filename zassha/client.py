import codecs
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional

import httpx
from pydantic import ValidationError

from zassha.config import settings
from zassha.events import DeltaEvent, DoneEvent, ErrorEvent, ProgressEvent, TokenUsage, decode_event

logger = logging.getLogger(__name__)

MAX_APPEND_ATTEMPTS = 3
ProgressCallback = Callable[[float], None]


class AnalysisFailed(Exception):
    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class UploadFailed(Exception):
    pass


@dataclass
class AnalysisResult:
    file_name: str
    text: str
    tokens: Optional[TokenUsage]


class StreamReassembler:
    """
    Rebuilds NDJSON events from arbitrarily split network chunks and applies them in order.

    Incomplete trailing bytes wait for the next chunk, malformed lines are skipped, and an error event
    raises AnalysisFailed. The done event's text, when non-empty, replaces the locally joined deltas.
    """

    def __init__(self, on_progress: Optional[ProgressCallback] = None, progress_floor: float = 20):
        self.on_progress = on_progress
        self.progress_floor = progress_floor
        self.text = ""
        self.tokens: Optional[TokenUsage] = None
        self.progress = progress_floor
        self.done = False
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""

    def _set_progress(self, value: float) -> None:
        self.progress = max(self.progress_floor, min(100.0, value))
        if self.on_progress:
            self.on_progress(self.progress)

    def feed(self, data: bytes) -> None:
        self._buffer += self._decoder.decode(data)
        self._drain()

    def finish(self) -> None:
        self._buffer += self._decoder.decode(b"", final=True)
        self._drain()
        remainder = self._buffer.strip()
        self._buffer = ""
        if remainder:
            self.handle_line(remainder)

    def _drain(self) -> None:
        newline = self._buffer.find("\n")
        while newline != -1:
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1:]
            self.handle_line(line)
            newline = self._buffer.find("\n")

    def handle_line(self, line: str) -> None:
        if not line.strip():
            return
        try:
            event = decode_event(line)
        except ValidationError:
            return
        self.apply(event)

    def apply(self, event) -> None:
        if isinstance(event, ProgressEvent):
            self._set_progress(event.progress)
        elif isinstance(event, DeltaEvent):
            self._set_progress(event.progress)
            self.text += event.delta
        elif isinstance(event, DoneEvent):
            self._set_progress(100)
            if event.text:
                self.text = event.text
            self.tokens = event.tokens
            self.done = True
        elif isinstance(event, ErrorEvent):
            raise AnalysisFailed(event.error.message, event.error.code)
        else:
            raise TypeError(f"unhandled event type: {type(event).__name__}")


def _error_message(response: httpx.Response, fallback: str) -> str:
    try:
        payload = response.json()
    except ValueError:
        return fallback
    if isinstance(payload, dict):
        for key in ("error", "detail"):
            if isinstance(payload.get(key), str):
                return payload[key]
    return fallback


class ZasshaClient:
    """Drives resumable uploads and streamed analyses against one server."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000/api",
        chunk_threshold: Optional[int] = None,
        chunk_size: Optional[int] = None,
        upload_progress_max: Optional[float] = None,
        http: Optional[httpx.Client] = None,
        timeout: float = 330.0,
    ):
        self.chunk_threshold = chunk_threshold or settings.CHUNK_THRESHOLD_BYTES
        self.chunk_size = chunk_size or settings.CHUNK_SIZE_BYTES
        self.upload_progress_max = upload_progress_max or settings.UPLOAD_PROGRESS_MAX
        self.http = http or httpx.Client(base_url=base_url, timeout=timeout, trust_env=False)

    def close(self) -> None:
        self.http.close()

    def __enter__(self) -> "ZasshaClient":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def health(self) -> dict:
        response = self.http.get("/health")
        response.raise_for_status()
        return response.json()

    def _append(self, upload_id: str, index: int, blob: bytes) -> httpx.Response:
        return self.http.post(
            "/uploads/append",
            data={"uploadId": upload_id, "index": str(index)},
            files={"blob": ("blob", blob, "application/octet-stream")},
        )

    def upload_resumable(self, path: Path, on_progress: Optional[ProgressCallback] = None) -> str:
        """
        Push a file in ordered chunks. A 409 carries the server's expected index and the loop jumps
        there instead of resending blindly; each index gets MAX_APPEND_ATTEMPTS tries.
        """
        size = path.stat().st_size
        response = self.http.post(
            "/uploads/init",
            data={"fileName": path.name, "size": str(size), "chunkSize": str(self.chunk_size)},
        )
        if response.status_code != 200:
            raise UploadFailed(_error_message(response, "init upload failed"))
        init = response.json()
        upload_id = init["uploadId"]
        chunk_size = int(init["chunkSize"])
        total = max(1, math.ceil(size / chunk_size))

        index = 0
        attempts = 0
        resyncs = 0
        with path.open("rb") as source:
            while index < total:
                source.seek(index * chunk_size)
                blob = source.read(chunk_size)
                response = self._append(upload_id, index, blob)
                if response.status_code == 200:
                    index += 1
                    attempts = 0
                    if on_progress:
                        on_progress(round(index / total * self.upload_progress_max, 2))
                    continue
                attempts += 1
                if response.status_code == 409:
                    expected = response.json().get("expected")
                    if isinstance(expected, int) and expected != index:
                        resyncs += 1
                        if resyncs > total + MAX_APPEND_ATTEMPTS:
                            raise UploadFailed(f"upload {upload_id} keeps losing its position")
                        logger.info("Resyncing upload %s from chunk %s to %s", upload_id, index, expected)
                        index = expected
                        attempts = 0
                        continue
                if attempts >= MAX_APPEND_ATTEMPTS:
                    raise UploadFailed(_error_message(response, f"append failed at chunk {index}"))

        response = self.http.post("/uploads/complete", data={"uploadId": upload_id})
        if response.status_code != 200:
            raise UploadFailed(_error_message(response, "complete upload failed"))
        return upload_id

    def stream_analysis(
        self,
        form: dict,
        files: Optional[dict] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> StreamReassembler:
        reassembler = StreamReassembler(on_progress, progress_floor=self.upload_progress_max)
        with self.http.stream("POST", "/explain/stream", data=form, files=files) as response:
            if response.status_code != 200:
                response.read()
                raise AnalysisFailed(_error_message(response, "stream error"))
            for chunk in response.iter_bytes():
                reassembler.feed(chunk)
        reassembler.finish()
        if not reassembler.done:
            raise AnalysisFailed("analysis stream ended before completion")
        return reassembler

    def analyze(
        self,
        path: Path | str,
        mode: str = "detail",
        lang: str = "en",
        hint: str = "",
        on_progress: Optional[ProgressCallback] = None,
    ) -> AnalysisResult:
        path = Path(path)
        form = {"fileName": path.name, "mode": mode, "lang": lang}
        if hint and hint.strip():
            form["hint"] = hint.strip()

        if path.stat().st_size > self.chunk_threshold:
            form["uploadId"] = self.upload_resumable(path, on_progress)
            reassembler = self.stream_analysis(form, on_progress=on_progress)
        else:
            with path.open("rb") as source:
                files = {"file": (path.name, source, "application/octet-stream")}
                reassembler = self.stream_analysis(form, files=files, on_progress=on_progress)

        if on_progress:
            on_progress(100)
        return AnalysisResult(file_name=path.name, text=reassembler.text, tokens=reassembler.tokens)

    def analyze_many(self, paths: Iterable[Path | str], **kwargs) -> list[AnalysisResult]:
        # One file at a time: each upload and analysis finishes before the next begins.
        return [self.analyze(path, **kwargs) for path in paths]
