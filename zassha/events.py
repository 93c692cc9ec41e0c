import enum
import json
import math
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class Phase(str, enum.Enum):
    init = "init"
    upload = "upload"
    processing = "processing"
    generate = "generate"
    stream = "stream"
    done = "done"
    error = "error"


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TokenUsage(WireModel):
    input_tokens: int = Field(0, alias="inputTokens")
    output_tokens: int = Field(0, alias="outputTokens")
    total_tokens: int = Field(0, alias="totalTokens")


class ErrorBody(WireModel):
    code: str
    message: str


class ProgressEvent(WireModel):
    kind: Literal["progress"] = "progress"
    phase: Phase
    progress: float
    message: Optional[str] = None
    segment_index: Optional[int] = Field(None, alias="segmentIndex")
    segment_total: Optional[int] = Field(None, alias="segmentTotal")


class DeltaEvent(WireModel):
    kind: Literal["delta"] = "delta"
    phase: Phase = Phase.stream
    progress: float
    delta: str
    segment_index: Optional[int] = Field(None, alias="segmentIndex")
    segment_total: Optional[int] = Field(None, alias="segmentTotal")


class DoneEvent(WireModel):
    kind: Literal["done"] = "done"
    phase: Phase = Phase.done
    progress: float = 100
    text: str
    tokens: Optional[TokenUsage] = None


class ErrorEvent(WireModel):
    kind: Literal["error"] = "error"
    phase: Phase = Phase.error
    progress: float
    error: ErrorBody


StreamEvent = Annotated[
    Union[ProgressEvent, DeltaEvent, DoneEvent, ErrorEvent],
    Field(discriminator="kind"),
]
stream_event_adapter: TypeAdapter = TypeAdapter(StreamEvent)

TERMINAL_KINDS = frozenset({"done", "error"})


def encode_event(event: BaseModel) -> bytes:
    """One NDJSON line. `tokens` stays explicit on done events so clients can tell 'no usage' apart."""
    payload = event.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(event, DoneEvent) and "tokens" not in payload:
        payload["tokens"] = None
    return (json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n").encode("utf-8")


def decode_event(line: str | bytes):
    return stream_event_adapter.validate_json(line)


class ProgressTracker:
    """
    Maps pipeline position to a progress scalar.

    0..upload_max is reserved for getting the media ready; upload_max..100 is split evenly across
    segments, and inside a segment progress advances with generated characters but never past the
    segment's share. Emitted values never decrease.
    """

    CHARS_PER_POINT = 500

    def __init__(self, upload_max: float = 20, segment_total: int = 1):
        self.upload_max = float(upload_max)
        self.segment_total = max(1, segment_total)
        self.last = 0.0

    def set_segment_total(self, segment_total: int) -> None:
        self.segment_total = max(1, segment_total)

    @property
    def segment_share(self) -> float:
        return (100.0 - self.upload_max) / self.segment_total

    def _advance(self, value: float) -> float:
        value = round(min(100.0, max(0.0, value)), 2)
        self.last = max(self.last, value)
        return self.last

    def upload(self, fraction: float) -> float:
        fraction = min(1.0, max(0.0, fraction))
        return self._advance(self.upload_max * fraction)

    def segment_start(self, index: int) -> float:
        return self._advance(self.upload_max + self.segment_share * index)

    def segment_output(self, index: int, segment_chars: int) -> float:
        share = self.segment_share
        # Hold back one point so only the next segment (or done) reaches the boundary.
        within = min(max(0.0, share - 1), math.floor(segment_chars / self.CHARS_PER_POINT))
        return self._advance(self.upload_max + share * index + within)

    def finish(self) -> float:
        return self._advance(100.0)
