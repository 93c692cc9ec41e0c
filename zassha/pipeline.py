import asyncio
import logging
import shutil
import tempfile
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

from fastapi.concurrency import run_in_threadpool

from zassha import gemini, prompts
from zassha.config import settings
from zassha.errors import RunTimeout, normalize_error
from zassha.events import (
    DeltaEvent,
    DoneEvent,
    ErrorBody,
    ErrorEvent,
    Phase,
    ProgressEvent,
    ProgressTracker,
    TokenUsage,
)
from zassha.polling import PollPolicy
from zassha.segmenter import SegmentationResult, segment_video

logger = logging.getLogger(__name__)


@dataclass
class AnalysisRequest:
    source_path: Path
    file_name: str
    mode: str = "detail"
    lang: str = "en"
    hint: str = ""
    # Removed when the run ends; None when the source belongs to an upload session.
    owned_dir: Optional[Path] = None


@dataclass
class AnalysisRun:
    """
    One analysis of one file. Segments are processed strictly in order because each prompt carries
    the bridge summary of everything generated before it.
    """

    request: AnalysisRequest
    client: object
    segment_len_sec: int = 0
    upload_progress_max: float = 20
    run_timeout: float = 300.0
    poll_policy: Optional[PollPolicy] = None
    segmenter: Callable[..., SegmentationResult] = segment_video
    clock: Callable[[], float] = time.monotonic
    accumulated_text: str = ""
    bridge_summary: str = ""
    usage: Optional[TokenUsage] = None
    bridge_history: list[str] = field(default_factory=list)
    prompts_sent: list[str] = field(default_factory=list)
    closed: bool = False

    def __post_init__(self):
        self.tracker = ProgressTracker(self.upload_progress_max)
        self._deadline = self.clock() + self.run_timeout

    def _check_deadline(self) -> None:
        if self.clock() > self._deadline:
            raise RunTimeout(f"analysis exceeded {self.run_timeout:.0f}s")

    async def _segments(self, work_dir: Path) -> list[Path]:
        result = await run_in_threadpool(
            self.segmenter,
            self.request.source_path,
            self.segment_len_sec,
            work_dir / "segments",
        )
        if result.fell_back:
            logger.warning("Analysing %s as a single segment: %s", self.request.file_name, result.fallback_reason)
        return result.paths

    async def _segment_events(self, index: int, total: int, segment: Path) -> AsyncIterator[object]:
        yield ProgressEvent(
            phase=Phase.generate,
            progress=self.tracker.segment_start(index),
            message=f"segment {index + 1}/{total}",
            segment_index=index,
            segment_total=total,
        )
        display_name = f"{Path(self.request.file_name).stem}.seg{index}{segment.suffix}"
        remote = await gemini.submit_segment(self.client, segment, display_name)
        try:
            remote = await gemini.await_ready(self.client, remote, self.poll_policy, clock=self.clock)
            self._check_deadline()
            yield ProgressEvent(
                phase=Phase.processing,
                progress=self.tracker.segment_start(index),
                message="ready",
                segment_index=index,
                segment_total=total,
            )

            prompt = prompts.compose_prompt(
                self.request.mode,
                self.request.lang,
                self.request.hint,
                self.bridge_summary,
            )
            self.prompts_sent.append(prompt)
            segment_chars = 0
            async with aclosing(self.client.stream(prompt, remote)) as chunks:
                async for chunk in chunks:
                    if chunk.usage is not None:
                        self.usage = chunk.usage
                    if chunk.text:
                        self.accumulated_text += chunk.text
                        segment_chars += len(chunk.text)
                        yield DeltaEvent(
                            progress=self.tracker.segment_output(index, segment_chars),
                            delta=chunk.text,
                            segment_index=index,
                            segment_total=total,
                        )
                    self._check_deadline()
        finally:
            await self._discard_remote(remote)

        self.bridge_summary = prompts.summarize_for_bridge(self.accumulated_text, self.request.lang)
        self.bridge_history.append(self.bridge_summary)

    async def _discard_remote(self, remote: gemini.RemoteFile) -> None:
        delete = getattr(self.client, "delete", None)
        if delete is None:
            return
        try:
            await delete(remote)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not delete remote file %s: %s", remote.name, exc)

    async def events(self) -> AsyncIterator[object]:
        """
        Ordered event stream for this run. Progress never decreases, and the stream ends with exactly
        one done or error event. Closing the generator early (client disconnect) abandons the remote
        poll or token stream at its current await.
        """
        work_dir = Path(tempfile.mkdtemp(prefix="run_", dir=_ensure_dir(settings.WORK_DIR)))
        try:
            yield ProgressEvent(phase=Phase.init, progress=self.tracker.upload(0), message="accepted")
            yield ProgressEvent(phase=Phase.upload, progress=self.tracker.upload(0.5), message="uploading")
            segments = await self._segments(work_dir)
            total = len(segments)
            self.tracker.set_segment_total(total)
            yield ProgressEvent(
                phase=Phase.upload,
                progress=self.tracker.upload(1.0),
                message="segmented",
                segment_total=total,
            )
            for index, segment in enumerate(segments):
                self._check_deadline()
                # Closing the run closes the segment too, so its remote file is deleted right away.
                async with aclosing(self._segment_events(index, total, segment)) as segment_events:
                    async for event in segment_events:
                        yield event

            logger.info(
                "Analysis of %s finished: %s segment(s), %s chars, tokens=%s",
                self.request.file_name,
                total,
                len(self.accumulated_text),
                self.usage.total_tokens if self.usage else None,
            )
            self.closed = True
            yield DoneEvent(progress=self.tracker.finish(), text=self.accumulated_text, tokens=self.usage)
        except asyncio.CancelledError:
            logger.info("Analysis of %s cancelled by client disconnect", self.request.file_name)
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Analysis of %s failed", self.request.file_name)
            if not self.closed:
                self.closed = True
                normalized = normalize_error(exc, self.request.lang)
                yield ErrorEvent(
                    progress=self.tracker.last,
                    error=ErrorBody(code=normalized.code, message=normalized.message),
                )
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)
            if self.request.owned_dir is not None:
                shutil.rmtree(self.request.owned_dir, ignore_errors=True)


def _ensure_dir(path: str) -> str:
    Path(path).mkdir(parents=True, exist_ok=True)
    return path


def build_run(request: AnalysisRequest, client) -> AnalysisRun:
    return AnalysisRun(
        request=request,
        client=client,
        segment_len_sec=settings.SEGMENT_LEN_SEC,
        upload_progress_max=settings.UPLOAD_PROGRESS_MAX,
        run_timeout=settings.RUN_TIMEOUT_SEC,
        poll_policy=PollPolicy(settings.FILE_POLL_INTERVAL_SEC, settings.FILE_READY_TIMEOUT_SEC),
    )
