import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from zassha.config import settings

logger = logging.getLogger(__name__)

PART_PREFIX = "part_"
# Fixed-width ordinal so lexicographic order is chronological order.
PART_PATTERN = PART_PREFIX + "%05d"


@dataclass
class SegmentationResult:
    paths: list[Path]
    fallback_reason: Optional[str] = None

    @property
    def fell_back(self) -> bool:
        return self.fallback_reason is not None


def build_segment_command(
    input_path: Path,
    output_dir: Path,
    segment_len_sec: int,
    ffmpeg_bin: Optional[str] = None,
) -> list[str]:
    ext = input_path.suffix or ".mp4"
    return [
        ffmpeg_bin or settings.FFMPEG_BIN,
        "-hide_banner",
        "-y",
        "-i",
        str(input_path),
        "-c",
        "copy",
        "-f",
        "segment",
        "-segment_time",
        str(segment_len_sec),
        "-reset_timestamps",
        "1",
        str(output_dir / f"{PART_PATTERN}{ext}"),
    ]


def segment_video(
    input_path: Path | str,
    segment_len_sec: int,
    output_dir: Optional[Path | str] = None,
    ffmpeg_bin: Optional[str] = None,
) -> SegmentationResult:
    """
    Split a video into stream-copied parts of segment_len_sec seconds.

    Segmentation never aborts an analysis: when it is disabled, when ffmpeg is missing or fails, or when
    it produces no parts, the result is the original file as the only segment with the reason recorded.
    """
    input_path = Path(input_path)
    if segment_len_sec <= 0:
        return SegmentationResult([input_path])

    out_dir = Path(output_dir) if output_dir else input_path.parent / f"{input_path.name}_segs"
    out_dir.mkdir(parents=True, exist_ok=True)
    command = build_segment_command(input_path, out_dir, segment_len_sec, ffmpeg_bin)
    try:
        result = subprocess.run(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            check=False,
        )
    except OSError as exc:
        logger.warning("ffmpeg unavailable, analysing %s as one segment: %s", input_path.name, exc)
        return SegmentationResult([input_path], f"ffmpeg unavailable: {exc}")

    if result.returncode != 0:
        snippet = (result.stderr or "").strip()[-400:]
        logger.warning("ffmpeg segmentation failed for %s (exit %s): %s", input_path.name, result.returncode, snippet)
        return SegmentationResult([input_path], f"ffmpeg exited with {result.returncode}")

    parts = sorted(path for path in out_dir.iterdir() if path.is_file() and path.name.startswith(PART_PREFIX))
    if not parts:
        logger.warning("ffmpeg produced no segments for %s", input_path.name)
        return SegmentationResult([input_path], "no segments produced")

    logger.info("Split %s into %s segment(s) of %ss", input_path.name, len(parts), segment_len_sec)
    return SegmentationResult(parts)


def ffmpeg_available(ffmpeg_bin: Optional[str] = None) -> bool:
    try:
        result = subprocess.run(
            [ffmpeg_bin or settings.FFMPEG_BIN, "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
    except OSError:
        return False
    return result.returncode == 0
