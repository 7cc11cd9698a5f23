#!/usr/bin/env python3
"""
unifier.py - ffmpeg driver for merging several media files into one.

Used by the web service (unifier_web) and runnable on its own:

    python unifier.py intro.mp4 talk.mp4 outro.mp4 -o merged.mp4 --quality high

Inputs are concatenated in the order given with ffmpeg's concat demuxer.
Video outputs use H.264/AAC (VP9/Opus for webm), audio outputs pick a codec
matching the container. quality=copy remuxes without re-encoding.
"""

import argparse
import asyncio
import collections
import json
import logging
import os
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VIDEO_EXTENSIONS = {".mp4", ".avi", ".mov", ".mkv", ".webm", ".flv", ".m4v"}
AUDIO_EXTENSIONS = {".mp3", ".wav", ".flac", ".m4a", ".aac", ".ogg", ".wma"}
MEDIA_EXTENSIONS = VIDEO_EXTENSIONS | AUDIO_EXTENSIONS

# Output containers that can carry a video stream
VIDEO_FORMATS = {"mp4", "mkv", "mov", "avi", "webm"}

# Audio codec per output container
AUDIO_CODECS = {
    "mp3":  "libmp3lame",
    "m4a":  "aac",
    "aac":  "aac",
    "ogg":  "libvorbis",
    "flac": "flac",
    "wav":  "pcm_s16le",
    "mp4":  "aac",
    "mov":  "aac",
    "mkv":  "aac",
    "avi":  "libmp3lame",
    "webm": "libopus",
}
LOSSLESS_AUDIO_CODECS = {"flac", "pcm_s16le"}

OUTPUT_FORMATS = set(AUDIO_CODECS)

QUALITY_LEVELS = ("low", "standard", "high", "copy")
PERFORMANCE_MODES = ("turbo", "eco")

DEFAULT_ENCODING = {
    "crf_low":                28,
    "crf_standard":           23,
    "crf_high":               18,
    "audio_bitrate_low":      "128k",
    "audio_bitrate_standard": "192k",
    "audio_bitrate_high":     "320k",
    "preset":                 "fast",
    "threads":                2,
    "turbo_preset":           "ultrafast",
    "turbo_threads":          0,      # 0 = let ffmpeg use every core
    "eco_preset":             "medium",
    "eco_threads":            1,
}

FALLBACK_METADATA = {
    "duration":   0.0,
    "resolution": "unknown",
    "codec":      "unknown",
    "bitrate":    0,
}

STDERR_TAIL_LINES = 40

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

logger = logging.getLogger("unifier")


def setup_logging(log_path: Optional[str]) -> None:
    fmt = "%(asctime)s [%(levelname)s] %(message)s"
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_path:
        Path(log_path).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    logging.basicConfig(level=logging.INFO, format=fmt, handlers=handlers)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class EngineError(RuntimeError):
    """Base class for failures reported by the ffmpeg/ffprobe layer."""


class ProbeError(EngineError):
    """ffprobe could not inspect a file. Callers degrade to FALLBACK_METADATA."""


class EngineStartError(EngineError):
    """The ffmpeg process could not be launched at all."""


class EngineRuntimeError(EngineError):
    """ffmpeg started but exited with a failure."""


# ---------------------------------------------------------------------------
# Media classification
# ---------------------------------------------------------------------------

def media_kind(filename: str) -> str:
    ext = Path(filename).suffix.lower()
    if ext in VIDEO_EXTENSIONS:
        return "video"
    if ext in AUDIO_EXTENSIONS:
        return "audio"
    return "unknown"


# ---------------------------------------------------------------------------
# ffprobe helpers
# ---------------------------------------------------------------------------

def get_video_stream(probe: dict) -> Optional[dict]:
    for s in probe.get("streams", []):
        if s.get("codec_type") != "video":
            continue
        # Embedded cover art in mp3/m4a shows up as a one-frame video stream
        if (s.get("disposition") or {}).get("attached_pic"):
            continue
        return s
    return None


def get_audio_streams(probe: dict) -> list[dict]:
    return [s for s in probe.get("streams", []) if s.get("codec_type") == "audio"]


def _to_float(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _to_int(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def summarize_probe(probe: dict) -> dict:
    """
    Reduce raw ffprobe JSON to {duration, resolution, codec, bitrate}.
    resolution is WxH for video and <rate>Hz for audio-only files.
    """
    fmt = probe.get("format") or {}
    result = {
        "duration": _to_float(fmt.get("duration")),
        "bitrate":  _to_int(fmt.get("bit_rate")),
    }
    vs = get_video_stream(probe)
    audio = get_audio_streams(probe)
    if vs:
        result["resolution"] = f"{vs.get('width')}x{vs.get('height')}"
        result["codec"] = vs.get("codec_name") or "unknown"
    elif audio:
        result["resolution"] = f"{audio[0].get('sample_rate')}Hz"
        result["codec"] = audio[0].get("codec_name") or "unknown"
    else:
        result["resolution"] = "unknown"
        result["codec"] = "unknown"
    return result


# ---------------------------------------------------------------------------
# Manifest (concat demuxer list)
# ---------------------------------------------------------------------------

def quote_concat_path(path: str) -> str:
    # Inside single quotes only the quote itself needs escaping: ' -> '\''
    return "'" + path.replace("'", "'\\''") + "'"


def write_manifest(paths: list[str], dest: Path) -> Path:
    """Write an ffconcat list referencing paths verbatim, in order."""
    lines = ["ffconcat version 1.0"]
    lines += [f"file {quote_concat_path(p)}" for p in paths]
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return dest


# ---------------------------------------------------------------------------
# Encoding profile -> ffmpeg output arguments
# ---------------------------------------------------------------------------

def resolve_performance_mode(turbo: bool, eco: bool) -> Optional[str]:
    """
    turbo and eco are mutually exclusive. When both are requested turbo wins.
    """
    if turbo:
        if eco:
            logger.warning("Both turbo and eco requested; eco suppressed")
        return "turbo"
    if eco:
        return "eco"
    return None


def _mode_settings(mode: Optional[str], cfg: dict) -> tuple[str, int]:
    if mode in PERFORMANCE_MODES:
        return cfg[f"{mode}_preset"], int(cfg[f"{mode}_threads"])
    return cfg["preset"], int(cfg["threads"])


def encoding_args(
    fmt: str,
    quality: str,
    mode: Optional[str],
    has_video: bool,
    cfg: Optional[dict] = None,
) -> list[str]:
    """
    Output options for one merge.

    quality=copy remuxes the streams verbatim; codec and performance mode are
    ignored. Otherwise a video profile is used when any input is video and
    the container can hold video, and an audio profile in every other case.
    """
    cfg = {**DEFAULT_ENCODING, **(cfg or {})}
    if quality not in QUALITY_LEVELS:
        raise ValueError(f"Unknown quality: {quality}")
    if fmt not in OUTPUT_FORMATS:
        raise ValueError(f"Unsupported output format: {fmt}")

    if quality == "copy":
        return ["-c", "copy"]

    preset, threads = _mode_settings(mode, cfg)
    audio_bitrate = cfg[f"audio_bitrate_{quality}"]
    args: list[str] = []

    if has_video and fmt in VIDEO_FORMATS:
        crf = str(cfg[f"crf_{quality}"])
        if fmt == "webm":
            deadline = "realtime" if mode == "turbo" else "good"
            args += ["-c:v", "libvpx-vp9", "-crf", crf, "-b:v", "0"]
            args += ["-deadline", deadline, "-row-mt", "1"]
        else:
            args += ["-c:v", "libx264", "-crf", crf, "-preset", preset]
            args += ["-pix_fmt", "yuv420p"]
        args += ["-c:a", AUDIO_CODECS[fmt], "-b:a", audio_bitrate]
        args += ["-threads", str(threads)]
        if fmt in ("mp4", "mov"):
            args += ["-movflags", "+faststart"]
        return args

    codec = AUDIO_CODECS[fmt]
    if has_video:
        args += ["-vn"]
    args += ["-c:a", codec]
    if codec not in LOSSLESS_AUDIO_CODECS:
        args += ["-b:a", audio_bitrate]
    args += ["-threads", str(threads)]
    if fmt in ("mp4", "m4a", "mov"):
        args += ["-movflags", "+faststart"]
    return args


# ---------------------------------------------------------------------------
# ffmpeg command builder
# ---------------------------------------------------------------------------

def build_ffmpeg_cmd(ffmpeg_bin: str, manifest: str, output: str, encoding: list[str]) -> list[str]:
    cmd = [ffmpeg_bin]
    cmd += ["-y", "-hide_banner", "-nostdin"]
    cmd += ["-loglevel", "warning"]
    cmd += ["-nostats", "-progress", "pipe:1"]
    cmd += ["-f", "concat", "-safe", "0", "-i", manifest]
    cmd += encoding
    cmd += [output]
    return cmd


# ---------------------------------------------------------------------------
# Progress events
# ---------------------------------------------------------------------------

@dataclass
class EngineEvent:
    kind: str                          # progress | end | error
    percent: Optional[float] = None
    throughput: Optional[str] = None
    error: Optional[str] = None


class ProgressParser:
    """
    Turns the key=value lines of `ffmpeg -progress pipe:1` into events.
    ffmpeg writes one block per update, terminated by progress=continue|end.
    """

    def __init__(self, total_duration: float) -> None:
        self.total_duration = total_duration
        self.out_time = 0.0
        self.speed: Optional[str] = None

    def feed(self, line: str) -> Optional[EngineEvent]:
        key, sep, value = line.strip().partition("=")
        if not sep:
            return None
        value = value.strip()
        if key in ("out_time_us", "out_time_ms"):
            # Both keys carry microseconds
            try:
                self.out_time = max(self.out_time, int(value) / 1_000_000)
            except ValueError:
                pass
        elif key == "speed":
            if value and value != "N/A":
                self.speed = value
        elif key == "progress":
            return EngineEvent("progress", percent=self.percent(), throughput=self.speed)
        return None

    def percent(self) -> Optional[float]:
        if self.total_duration <= 0:
            return None
        return min(100.0, 100.0 * self.out_time / self.total_duration)


async def _drain(stream: asyncio.StreamReader, tail: collections.deque) -> None:
    async for raw in stream:
        line = raw.decode(errors="replace").rstrip()
        if line:
            tail.append(line)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class FFmpegEngine:
    """
    Async wrapper around the ffmpeg and ffprobe binaries.

    run() yields EngineEvent objects: any number of "progress" events
    followed by exactly one "end" or "error". EngineStartError is raised
    when the process cannot be spawned.
    """

    def __init__(self, ffmpeg_bin: str = "ffmpeg", ffprobe_bin: str = "ffprobe",
                 probe_timeout: float = 60.0) -> None:
        self.ffmpeg_bin    = ffmpeg_bin
        self.ffprobe_bin   = ffprobe_bin
        self.probe_timeout = probe_timeout

    async def probe(self, path: str) -> dict:
        cmd = [
            self.ffprobe_bin,
            "-v", "error",
            "-print_format", "json",
            "-show_streams",
            "-show_format",
            str(path),
        ]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProbeError(f"ffprobe could not be started: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.probe_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ProbeError(f"ffprobe timed out after {self.probe_timeout}s")

        stderr_msg = stderr.decode(errors="replace").strip()
        if proc.returncode != 0:
            hint = stderr_msg[:2000] if stderr_msg else "(no stderr, file may be empty or unreadable)"
            raise ProbeError(f"ffprobe failed: {hint}")
        try:
            data = json.loads(stdout.decode(errors="replace"))
        except json.JSONDecodeError as e:
            raise ProbeError(f"ffprobe JSON parse error: {e} | stderr: {stderr_msg[:500]}")
        return summarize_probe(data)

    async def run(
        self,
        manifest: str,
        output: str,
        encoding: list[str],
        total_duration: float,
    ) -> AsyncIterator[EngineEvent]:
        cmd = build_ffmpeg_cmd(self.ffmpeg_bin, str(manifest), str(output), encoding)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise EngineStartError(f"Could not start {self.ffmpeg_bin}: {e}") from e

        logger.info(f"ffmpeg started (pid={proc.pid}) -> {output}")
        stderr_tail: collections.deque = collections.deque(maxlen=STDERR_TAIL_LINES)
        stderr_task = asyncio.create_task(_drain(proc.stderr, stderr_tail))
        parser = ProgressParser(total_duration)
        try:
            async for raw in proc.stdout:
                event = parser.feed(raw.decode(errors="replace"))
                if event is not None:
                    yield event
            returncode = await proc.wait()
            await stderr_task
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            if not stderr_task.done():
                stderr_task.cancel()

        logger.info(f"ffmpeg exited (pid={proc.pid}, rc={returncode})")
        if returncode == 0:
            yield EngineEvent("end", percent=100.0, throughput=parser.speed)
        else:
            tail = "\n".join(stderr_tail)
            yield EngineEvent("error", error=f"ffmpeg failed (rc={returncode})\n{tail}".rstrip())

    async def merge(
        self,
        manifest: str,
        output: str,
        encoding: list[str],
        total_duration: float,
        on_progress: Optional[Callable[[EngineEvent], None]] = None,
    ) -> None:
        """Run to completion, raising EngineRuntimeError on failure."""
        async for event in self.run(manifest, output, encoding, total_duration):
            if event.kind == "error":
                raise EngineRuntimeError(event.error)
            if on_progress:
                on_progress(event)


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Merge media files into a single output with ffmpeg.")
    p.add_argument("inputs", nargs="+", help="Input files, in playback order")
    p.add_argument("-o", "--output", required=True, help="Output file; its extension selects the container")
    p.add_argument("--quality", choices=QUALITY_LEVELS, default="standard")
    p.add_argument("--turbo", action="store_true", help="Fastest preset, all cores")
    p.add_argument("--eco", action="store_true", help="Single thread, gentle on the machine")
    p.add_argument("--ffmpeg", default=os.environ.get("FFMPEG_BIN", "ffmpeg"))
    p.add_argument("--ffprobe", default=os.environ.get("FFPROBE_BIN", "ffprobe"))
    p.add_argument("--log", default=None, help="Also log to this file")
    return p.parse_args(argv)


async def _run_cli(args: argparse.Namespace) -> int:
    engine = FFmpegEngine(args.ffmpeg, args.ffprobe)
    inputs = [Path(p).resolve() for p in args.inputs]
    output = Path(args.output).resolve()
    fmt = output.suffix.lstrip(".").lower()

    total_duration = 0.0
    has_video = False
    for src in inputs:
        try:
            meta = await engine.probe(str(src))
        except ProbeError as e:
            logger.warning(f"Probe failed for {src.name}: {e}")
            meta = dict(FALLBACK_METADATA)
        total_duration += meta["duration"]
        has_video = has_video or media_kind(src.name) == "video"
        logger.info(f"{src.name}: {meta['duration']:.1f}s {meta['resolution']} {meta['codec']}")

    mode = resolve_performance_mode(args.turbo, args.eco)
    encoding = encoding_args(fmt, args.quality, mode, has_video)

    fd, list_path = tempfile.mkstemp(prefix="list_", suffix=".txt")
    os.close(fd)
    manifest = write_manifest([str(p) for p in inputs], Path(list_path))

    def show(event: EngineEvent) -> None:
        pct = f"{event.percent:5.1f}%" if event.percent is not None else "  ?  "
        sys.stderr.write(f"\r[{pct}] speed={event.throughput or '-'}   ")
        sys.stderr.flush()

    try:
        await engine.merge(str(manifest), str(output), encoding, total_duration, on_progress=show)
    except EngineError as e:
        sys.stderr.write("\n")
        logger.error(f"Merge failed: {e}")
        output.unlink(missing_ok=True)
        return 1
    finally:
        manifest.unlink(missing_ok=True)

    sys.stderr.write("\n")
    logger.info(f"DONE {output}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log)

    if len(args.inputs) < 2:
        logger.error("At least 2 input files are required")
        return 2
    for src in args.inputs:
        if not Path(src).is_file():
            logger.error(f"Input not found: {src}")
            return 2
        if Path(src).suffix.lower() not in MEDIA_EXTENSIONS:
            logger.error(f"Unsupported input type: {src}")
            return 2
    fmt = Path(args.output).suffix.lstrip(".").lower()
    if fmt not in OUTPUT_FORMATS:
        logger.error(f"Unsupported output format: .{fmt}")
        return 2

    return asyncio.run(_run_cli(args))


if __name__ == "__main__":
    sys.exit(main())
