"""Local ffmpeg operations used by pipeline steps.

Operations (each writes a new output file, inputs are never modified):
- trim: keep the first N seconds (stream copy)
- overlay_text: burn wrapped text with drawtext, one filter per line
- mix_audio: mix or replace the soundtrack with a music track, with fades
- concat: join videos, normalizing size / fps / pixel format / audio layout
- strip_audio: drop the audio track

All ffmpeg/ffprobe calls are blocking subprocess runs wrapped in
asyncio.to_thread by the async entry points. ffmpeg failures surface as
TranscodeError carrying the first 500 chars of stderr.
"""

import asyncio
import logging
import secrets
import subprocess
import time
from pathlib import Path
from typing import Optional

from ugcpipe.errors import TranscodeError
from ugcpipe.schemas.pipeline import TextOverlayConfig

logger = logging.getLogger(__name__)

FFMPEG = "ffmpeg"
FFPROBE = "ffprobe"

# Reference frame width used to estimate characters per line
_WRAP_VIDEO_WIDTH = 720
_DEFAULT_SIDE_PADDING = 90

_FALLBACK_FONTS = (
    "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/truetype/freefont/FreeSansBold.ttf",
    "/System/Library/Fonts/Helvetica.ttc",
)

_FONT_CANDIDATES: dict[str, tuple[str, ...]] = {
    "Impact, sans-serif": (
        "/usr/share/fonts/truetype/msttcorefonts/Impact.ttf",
        "/System/Library/Fonts/Supplemental/Impact.ttf",
    ),
    "Georgia, serif": (
        "/usr/share/fonts/truetype/msttcorefonts/Georgia.ttf",
        "/usr/share/fonts/truetype/dejavu/DejaVuSerif.ttf",
    ),
    "Courier New, monospace": (
        "/usr/share/fonts/truetype/msttcorefonts/cour.ttf",
        "/usr/share/fonts/truetype/dejavu/DejaVuSansMono.ttf",
    ),
    "Times New Roman, serif": (
        "/usr/share/fonts/truetype/msttcorefonts/Times_New_Roman.ttf",
        "/usr/share/fonts/truetype/dejavu/DejaVuSerif.ttf",
    ),
}

# Style preset -> drawtext overrides
_STYLE_PRESETS: dict[str, dict] = {
    "bold-shadow": {"shadow": 2},
    "classic": {"shadow": 2},
    "retro": {"font_color": "#ff6b35", "shadow": 3},
    "neon": {"font_color": "#ff00ff", "border": 2},
    "creator": {"uppercase": True},
    "text-box": {"bg_color": "#FFFFFF", "font_color": "#000000", "box_border": 10},
    "bubble": {"bg_color": "#ff3b30", "font_color": "#FFFFFF", "box_border": 14},
    "tag": {"bg_color": "#ffcc00", "font_color": "#000000", "box_border": 10},
    "subscribe": {"bg_color": "#ff0000", "font_color": "#FFFFFF", "box_border": 14, "uppercase": True},
    "caption": {"bg_color": "#000000", "font_color": "#FFFFFF", "box_border": 12},
    "rounded": {"bg_color": "#8b5cf6", "font_color": "#FFFFFF", "box_border": 16},
}


def _run(cmd: list[str]) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(cmd, check=True, capture_output=True)
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.decode(errors="replace") if e.stderr else "No error output"
        logger.error("%s failed: %s", cmd[0], stderr)
        raise TranscodeError(f"{cmd[0]} failed: {stderr[:500]}") from e
    except FileNotFoundError as e:
        raise TranscodeError(f"{cmd[0]} not found on PATH") from e


# ---------------------------------------------------------------------------
# Probes
# ---------------------------------------------------------------------------

def probe_duration(path: Path) -> float:
    """Container duration in seconds, 0.0 if unknown."""
    try:
        result = _run([
            FFPROBE, "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            str(path),
        ])
        return float(result.stdout.decode().strip() or 0)
    except (TranscodeError, ValueError):
        return 0.0


def has_audio(path: Path) -> bool:
    try:
        result = _run([
            FFPROBE, "-v", "error",
            "-select_streams", "a",
            "-show_entries", "stream=index",
            "-of", "csv=p=0",
            str(path),
        ])
    except TranscodeError:
        return False
    return bool(result.stdout.decode().strip())


def probe_dimensions(path: Path) -> tuple[int, int]:
    """(width, height) of the first video stream, 720x1280 if unknown."""
    try:
        result = _run([
            FFPROBE, "-v", "error",
            "-select_streams", "v:0",
            "-show_entries", "stream=width,height",
            "-of", "csv=p=0:s=x",
            str(path),
        ])
        w, h = (int(v) for v in result.stdout.decode().strip().split("x")[:2])
        if w > 0 and h > 0:
            return w, h
    except (TranscodeError, ValueError):
        pass
    return 720, 1280


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

def wrap_by_width(text: str, max_chars: int) -> str:
    lines: list[str] = []
    line = ""
    for word in text.split():
        if not line:
            line = word
        elif len(line) + 1 + len(word) <= max_chars:
            line += " " + word
        else:
            lines.append(line)
            line = word
    if line:
        lines.append(line)
    return "\n".join(lines)


def wrap_by_word_count(text: str, words_per_line: int) -> str:
    """At most ``words_per_line`` words per line, keeping existing newlines."""
    out = []
    for paragraph in text.split("\n"):
        words = paragraph.split()
        if len(words) <= words_per_line:
            out.append(paragraph)
            continue
        out.extend(
            " ".join(words[i:i + words_per_line])
            for i in range(0, len(words), words_per_line)
        )
    return "\n".join(out)


def resolve_font_file(font_family: Optional[str]) -> Optional[str]:
    candidates = _FONT_CANDIDATES.get(font_family or "", ()) + _FALLBACK_FONTS
    for candidate in candidates:
        if Path(candidate).exists():
            return candidate
    return None


def _escape_filter_path(path: str) -> str:
    return path.replace(":", "\\:").replace("'", "\\'")


def build_drawtext_filters(config: TextOverlayConfig, text_files: list[Path]) -> list[str]:
    """One drawtext filter per wrapped line; ``text_files`` holds each line's text."""
    preset = _STYLE_PRESETS.get(config.text_style or "", {})
    font_color = preset.get("font_color", config.font_color)
    bg_color = config.bg_color or preset.get("bg_color")
    box_border = preset.get("box_border", 10)
    shadow = preset.get("shadow", 0)
    border = preset.get("border", 0)

    n_lines = len(text_files)
    line_height = round(config.font_size * 1.3)
    total_height = n_lines * line_height
    left = config.padding_left or _DEFAULT_SIDE_PADDING
    right = config.padding_right or _DEFAULT_SIDE_PADDING

    if config.position == "custom" and config.custom_x is not None:
        x_expr = {
            "left": f"w*{config.custom_x}/100",
            "right": f"w*{config.custom_x}/100-text_w",
        }.get(config.text_align, f"w*{config.custom_x}/100-text_w/2")
    else:
        h_offset = (config.padding_left - config.padding_right) / 2
        x_expr = {
            "left": f"{left}",
            "right": f"w-text_w-{right}",
        }.get(config.text_align, "(w-text_w)/2" if h_offset == 0 else f"(w-text_w)/2+{h_offset:g}")

    if config.position == "custom" and config.custom_y is not None:
        base_y = f"h*{config.custom_y}/100-{round(total_height / 2)}"
    elif config.position == "top":
        base_y = "50"
    elif config.position == "center":
        base_y = f"(h-{total_height})/2"
    else:
        base_y = f"h-{total_height}-50"

    enable = ""
    if config.start_time is not None or config.duration is not None:
        start = config.start_time or 0
        if config.duration is not None:
            enable = f":enable='between(t,{start:g},{start + config.duration:g})'"
        else:
            enable = f":enable='gte(t,{start:g})'"

    font_file = resolve_font_file(config.font_family)
    filters = []
    for i, text_file in enumerate(text_files):
        y_expr = base_y if i == 0 else f"{base_y}+{i * line_height}"
        f = (
            f"drawtext=textfile='{_escape_filter_path(str(text_file))}'"
            f":fontsize={config.font_size}"
            f":fontcolor={font_color}"
            f":x={x_expr}"
            f":y={y_expr}"
        )
        if font_file:
            f += f":fontfile='{_escape_filter_path(font_file)}'"
        if shadow:
            f += f":shadowcolor=black@0.6:shadowx={shadow}:shadowy={shadow}"
        if border:
            f += f":borderw={border}:bordercolor={font_color}@0.5"
        if bg_color:
            f += f":box=1:boxcolor={bg_color}@0.7:boxborderw={box_border}"
        f += enable
        filters.append(f)
    return filters


def wrap_overlay_text(config: TextOverlayConfig) -> list[str]:
    if config.words_per_line and config.words_per_line > 0:
        wrapped = wrap_by_word_count(config.text, config.words_per_line)
    else:
        left = config.padding_left or _DEFAULT_SIDE_PADDING
        right = config.padding_right or _DEFAULT_SIDE_PADDING
        max_chars = max(5, int((_WRAP_VIDEO_WIDTH - left - right) / (config.font_size * 0.55)))
        wrapped = wrap_by_width(config.text, max_chars)
    lines = wrapped.split("\n")
    if _STYLE_PRESETS.get(config.text_style or "", {}).get("uppercase"):
        lines = [line.upper() for line in lines]
    return lines


# ---------------------------------------------------------------------------
# Blocking operations
# ---------------------------------------------------------------------------

def _trim(input_path: Path, output_path: Path, max_seconds: float) -> None:
    _run([
        FFMPEG, "-y",
        "-i", str(input_path),
        "-t", f"{max_seconds:g}",
        "-c", "copy",
        str(output_path),
    ])


def _overlay_text(input_path: Path, output_path: Path, config: TextOverlayConfig) -> None:
    lines = wrap_overlay_text(config)
    stamp = f"{int(time.time() * 1000)}-{secrets.token_hex(2)}"
    text_files = [output_path.with_name(f"drawtext-{stamp}-{i}.txt") for i in range(len(lines))]
    try:
        for text_file, line in zip(text_files, lines):
            text_file.write_text(line, encoding="utf-8")
        filters = build_drawtext_filters(config, text_files)
        _run([
            FFMPEG, "-y",
            "-i", str(input_path),
            "-vf", ",".join(filters),
            "-c:a", "copy",
            str(output_path),
        ])
    finally:
        for text_file in text_files:
            text_file.unlink(missing_ok=True)


def build_music_filter(volume: float, fade_in: Optional[float], fade_out: Optional[float],
                       video_duration: float) -> str:
    audio_filter = f"[1:a]volume={volume / 100:g}"
    if fade_in:
        audio_filter += f",afade=t=in:d={fade_in:g}"
    if fade_out and video_duration > 0:
        start = max(0.0, video_duration - fade_out)
        audio_filter += f",afade=t=out:st={start:g}:d={fade_out:g}"
    return audio_filter + "[a1]"


def _mix_audio(
    input_path: Path,
    track_path: Path,
    output_path: Path,
    volume: float,
    fade_in: Optional[float],
    fade_out: Optional[float],
    mode: str,
) -> None:
    audio_filter = build_music_filter(volume, fade_in, fade_out, probe_duration(input_path))
    if mode == "mix" and has_audio(input_path):
        _run([
            FFMPEG, "-y",
            "-i", str(input_path),
            "-i", str(track_path),
            "-filter_complex", f"{audio_filter};[0:a][a1]amix=inputs=2:duration=first",
            "-c:v", "copy",
            str(output_path),
        ])
    else:
        # Replace mode, or nothing to mix with: music becomes the soundtrack
        _run([
            FFMPEG, "-y",
            "-i", str(input_path),
            "-i", str(track_path),
            "-filter_complex", audio_filter,
            "-map", "0:v",
            "-map", "[a1]",
            "-c:v", "copy",
            "-shortest",
            str(output_path),
        ])


def _concat(video_paths: list[Path], output_path: Path) -> None:
    target_w, target_h = probe_dimensions(video_paths[0])
    inputs: list[str] = []
    filters: list[str] = []
    concat_inputs = ""

    for i, path in enumerate(video_paths):
        inputs.extend(["-i", str(path)])
        filters.append(
            f"[{i}:v]scale={target_w}:{target_h}:force_original_aspect_ratio=decrease,"
            f"pad={target_w}:{target_h}:(ow-iw)/2:(oh-ih)/2,"
            f"setsar=1,fps=30,format=yuv420p[v{i}]"
        )
        if has_audio(path):
            filters.append(f"[{i}:a]aformat=sample_rates=44100:channel_layouts=stereo[a{i}]")
        else:
            # anullsrc is infinite; bound it to the clip length
            duration = probe_duration(path) or 10
            filters.append(f"anullsrc=r=44100:cl=stereo,atrim=duration={duration:g}[a{i}]")
        concat_inputs += f"[v{i}][a{i}]"

    filters.append(f"{concat_inputs}concat=n={len(video_paths)}:v=1:a=1[vout][aout]")
    _run([
        FFMPEG, "-y",
        *inputs,
        "-filter_complex", ";".join(filters),
        "-map", "[vout]",
        "-map", "[aout]",
        "-c:v", "libx264",
        "-preset", "fast",
        "-c:a", "aac",
        "-shortest",
        str(output_path),
    ])


def _strip_audio(input_path: Path, output_path: Path) -> None:
    _run([
        FFMPEG, "-y",
        "-i", str(input_path),
        "-c:v", "copy",
        "-an",
        str(output_path),
    ])


# ---------------------------------------------------------------------------
# Async facade
# ---------------------------------------------------------------------------

class Transcoder:
    """Async wrapper running each ffmpeg operation in a worker thread."""

    async def duration(self, path: Path) -> float:
        return await asyncio.to_thread(probe_duration, path)

    async def trim(self, input_path: Path, output_path: Path, max_seconds: float) -> Path:
        logger.info("Trimming %s to %.1fs", input_path.name, max_seconds)
        await asyncio.to_thread(_trim, input_path, output_path, max_seconds)
        return output_path

    async def overlay_text(self, input_path: Path, output_path: Path, config: TextOverlayConfig) -> Path:
        logger.info("Overlaying text on %s (%d chars)", input_path.name, len(config.text))
        await asyncio.to_thread(_overlay_text, input_path, output_path, config)
        return output_path

    async def mix_audio(
        self,
        input_path: Path,
        track_path: Path,
        output_path: Path,
        volume: float = 30,
        fade_in: Optional[float] = None,
        fade_out: Optional[float] = None,
        mode: str = "mix",
    ) -> Path:
        logger.info("Mixing music into %s (mode=%s, volume=%s)", input_path.name, mode, volume)
        await asyncio.to_thread(
            _mix_audio, input_path, track_path, output_path, volume, fade_in, fade_out, mode,
        )
        return output_path

    async def concat(self, video_paths: list[Path], output_path: Path) -> Path:
        logger.info("Concatenating %d videos -> %s", len(video_paths), output_path.name)
        await asyncio.to_thread(_concat, video_paths, output_path)
        return output_path

    async def strip_audio(self, input_path: Path, output_path: Path) -> Path:
        await asyncio.to_thread(_strip_audio, input_path, output_path)
        return output_path
