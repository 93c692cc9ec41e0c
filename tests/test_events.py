import json

from zassha.events import (
    DeltaEvent,
    DoneEvent,
    ErrorBody,
    ErrorEvent,
    Phase,
    ProgressEvent,
    ProgressTracker,
    TokenUsage,
    decode_event,
    encode_event,
)


def test_tracker_never_goes_backwards():
    tracker = ProgressTracker(upload_max=20)
    values = [
        tracker.upload(0),
        tracker.upload(1.0),
        tracker.upload(0.5),
        tracker.segment_start(0),
        tracker.segment_output(0, 10_000),
        tracker.segment_start(0),
        tracker.finish(),
        tracker.upload(0),
    ]
    assert values == sorted(values)
    assert values[-1] == 100


def test_segment_output_stays_inside_its_share():
    tracker = ProgressTracker(upload_max=20, segment_total=4)
    assert tracker.segment_share == 20
    assert tracker.segment_start(1) == 40
    assert tracker.segment_output(1, 2_000) == 44
    assert tracker.segment_output(1, 1_000_000) == 59
    assert tracker.segment_start(2) == 60


def test_wire_format_uses_camel_case_and_newlines():
    line = encode_event(
        ProgressEvent(phase=Phase.generate, progress=46.67, message="segment 2/3", segment_index=1, segment_total=3)
    )
    assert line.endswith(b"\n")
    payload = json.loads(line)
    assert payload == {
        "kind": "progress",
        "phase": "generate",
        "progress": 46.67,
        "message": "segment 2/3",
        "segmentIndex": 1,
        "segmentTotal": 3,
    }


def test_done_without_usage_sends_null_tokens():
    payload = json.loads(encode_event(DoneEvent(text="## Overview")))
    assert payload["tokens"] is None
    assert payload["progress"] == 100

    with_usage = json.loads(encode_event(DoneEvent(text="x", tokens=TokenUsage(input_tokens=5, output_tokens=2, total_tokens=7))))
    assert with_usage["tokens"] == {"inputTokens": 5, "outputTokens": 2, "totalTokens": 7}


def test_decode_dispatches_on_kind():
    assert isinstance(decode_event('{"kind":"delta","phase":"stream","progress":30,"delta":"hi"}'), DeltaEvent)
    error = decode_event(encode_event(ErrorEvent(progress=20, error=ErrorBody(code="INTERNAL", message="Processing failed"))))
    assert isinstance(error, ErrorEvent)
    assert error.error.code == "INTERNAL"
    assert "日本語" in encode_event(DeltaEvent(progress=30, delta="日本語")).decode("utf-8")
