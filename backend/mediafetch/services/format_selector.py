"""
Extractor argument builder
Turns a format/quality selection into a yt-dlp command line
"""
from pathlib import Path
from typing import List, Optional

from mediafetch.core.config import settings
from mediafetch.models.jobs import OutputFormat

ARTIFACT_STEM = "output"


def parse_quality(value) -> Optional[int]:
    """
    Requested max height, or None when the value is not a positive
    integer (the default format is used then).
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        height = int(str(value).strip())
    except ValueError:
        return None
    return height if height > 0 else None


def build_format_string(quality: Optional[int] = None) -> str:
    """
    yt-dlp format selector for video downloads.
    Best video up to the requested height merged with best audio,
    falling back to the best single file.
    """
    if quality is not None and quality > 0:
        return f"bv*[height<={quality}]+ba/b[height<={quality}]/best"
    return "bv*+ba/best"


def artifact_path(workspace: Path, fmt: OutputFormat) -> Path:
    """Where the extractor is expected to leave its output"""
    return Path(workspace) / f"{ARTIFACT_STEM}{fmt.extension}"


def build_command(
    locator: str,
    fmt: OutputFormat,
    workspace: Path,
    quality: Optional[int] = None,
    binary: Optional[str] = None,
) -> List[str]:
    """
    Build the full argument vector for one extraction.
    Output is confined to the job workspace.
    """
    output_template = str(Path(workspace) / f"{ARTIFACT_STEM}.%(ext)s")
    args = [binary or settings.YTDLP_BINARY, "--no-playlist", "--newline"]

    if fmt is OutputFormat.MP3:
        args += ["-x", "--audio-format", "mp3", "--audio-quality", "0"]
    else:
        # Merges land in mp4; single-file fallbacks (webm, ...) are remuxed to it
        args += [
            "-f", build_format_string(quality),
            "--merge-output-format", "mp4",
            "--remux-video", "mp4",
        ]

    args += ["-o", output_template, locator]
    return args
