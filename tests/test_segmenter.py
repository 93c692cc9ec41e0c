import stat

from zassha.segmenter import build_segment_command, ffmpeg_available, segment_video


def _stub_tool(tmp_path, body: str):
    script = tmp_path / "fake-ffmpeg"
    script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(script)


# The last argument is the output pattern, e.g. .../part_%05d.mp4
WRITE_THREE_PARTS = """
for last; do :; done
for i in 2 0 1; do
  : > "$(printf "$last" "$i")"
done
exit 0
"""


def test_zero_length_bypasses_segmentation(video_file):
    source = video_file()
    result = segment_video(source, 0)
    assert result.paths == [source]
    assert not result.fell_back


def test_missing_tool_falls_back_to_whole_file(video_file, tmp_path):
    source = video_file()
    result = segment_video(source, 30, tmp_path / "segs", ffmpeg_bin=str(tmp_path / "no-such-ffmpeg"))
    assert result.paths == [source]
    assert result.fell_back


def test_failing_tool_falls_back_to_whole_file(video_file, tmp_path):
    source = video_file()
    tool = _stub_tool(tmp_path, "echo boom >&2\nexit 1\n")
    result = segment_video(source, 30, tmp_path / "segs", ffmpeg_bin=tool)
    assert result.paths == [source]
    assert "exited with 1" in result.fallback_reason


def test_tool_without_output_falls_back(video_file, tmp_path):
    source = video_file()
    tool = _stub_tool(tmp_path, "exit 0\n")
    result = segment_video(source, 30, tmp_path / "segs", ffmpeg_bin=tool)
    assert result.paths == [source]
    assert result.fallback_reason == "no segments produced"


def test_parts_come_back_in_chronological_order(video_file, tmp_path):
    source = video_file("screen.mp4")
    tool = _stub_tool(tmp_path, WRITE_THREE_PARTS)
    result = segment_video(source, 60, tmp_path / "segs", ffmpeg_bin=tool)

    assert not result.fell_back
    assert [path.name for path in result.paths] == ["part_00000.mp4", "part_00001.mp4", "part_00002.mp4"]


def test_command_requests_stream_copy_with_reset_timestamps(tmp_path):
    command = build_segment_command(tmp_path / "in.webm", tmp_path / "out", 45, ffmpeg_bin="ffmpeg")
    assert command[0] == "ffmpeg"
    assert command[command.index("-c") + 1] == "copy"
    assert command[command.index("-segment_time") + 1] == "45"
    assert command[command.index("-reset_timestamps") + 1] == "1"
    assert command[-1].endswith("part_%05d.webm")


def test_ffmpeg_check_reports_missing_binary(tmp_path):
    assert ffmpeg_available(str(tmp_path / "missing")) is False
    assert ffmpeg_available(_stub_tool(tmp_path, "exit 0\n")) is True
