from __future__ import annotations

import asyncio
import os
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Deque, Dict, List, Optional

from shared.logging.logger import get_logger

log = get_logger("services.capture.ffmpeg")

STDERR_TAIL_LINES = 20


def resolve_binary(configured: str, fallback: str) -> str:
    # Bare names are resolved through PATH by the OS
    if os.sep not in configured and (os.altsep is None or os.altsep not in configured):
        return configured
    path = Path(configured)
    if path.exists():
        return str(path)
    log.warning(f"Configured binary not found at {path}; falling back to PATH ({fallback})")
    return fallback


@dataclass(frozen=True)
class TranscoderEvent:
    kind: str  # start | progress | end | error
    timemark: Optional[str] = None
    fps: Optional[float] = None
    throughput: Optional[str] = None
    message: Optional[str] = None


def _format_timemark(out_time: Optional[str]) -> str:
    if not out_time:
        return "00:00:00.00"
    # 00:01:02.345678 -> 00:01:02.34
    head, dot, frac = out_time.partition(".")
    return f"{head}.{frac[:2].ljust(2, '0')}" if dot else head


def _parse_fps(raw: Optional[str]) -> Optional[float]:
    try:
        return float(raw) if raw not in (None, "", "N/A") else None
    except ValueError:
        return None


class TranscodeProcess:
    """A running ffmpeg segmenter reporting through ``-progress pipe:1``."""

    def __init__(self, process: asyncio.subprocess.Process, command: List[str]):
        self._process = process
        self.command = command
        self._stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_task = asyncio.create_task(self._collect_stderr())

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    async def _collect_stderr(self) -> None:
        if self._process.stderr is None:
            return
        async for raw in self._process.stderr:
            line = raw.decode("utf-8", errors="ignore").strip()
            if line:
                self._stderr_tail.append(line)

    async def events(self) -> AsyncIterator[TranscoderEvent]:
        yield TranscoderEvent(kind="start")

        block: Dict[str, str] = {}
        if self._process.stdout is not None:
            async for raw in self._process.stdout:
                key, sep, value = raw.decode("utf-8", errors="ignore").strip().partition("=")
                if not sep:
                    continue
                block[key.strip()] = value.strip()
                if key.strip() == "progress":
                    yield TranscoderEvent(
                        kind="progress",
                        timemark=_format_timemark(block.get("out_time")),
                        fps=_parse_fps(block.get("fps")),
                        throughput=block.get("bitrate"),
                    )
                    block = {}

        returncode = await self._process.wait()
        await self._stderr_task

        if returncode == 0:
            yield TranscoderEvent(kind="end")
        else:
            detail = " | ".join(self._stderr_tail) or "no stderr output"
            yield TranscoderEvent(kind="error", message=f"ffmpeg exited with code {returncode}: {detail}")

    def terminate(self) -> None:
        if self._process.returncode is None:
            try:
                self._process.terminate()
            except ProcessLookupError:
                pass

    async def wait(self) -> Optional[int]:
        return await self._process.wait()


class FFmpegSegmenter:
    """Spawns ffmpeg to cut a live input into numbered mp4 segments."""

    def __init__(self, ffmpeg_path: str = "ffmpeg"):
        self._ffmpeg_path = ffmpeg_path

    @property
    def ffmpeg_path(self) -> str:
        return resolve_binary(self._ffmpeg_path, "ffmpeg")

    def build_command(self, source_url: str, chunk_duration: float, output_pattern: str) -> List[str]:
        chunk = f"{chunk_duration:g}"
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel",
            "error",
            "-nostats",
            "-progress",
            "pipe:1",
            "-user_agent",
            "Mozilla/5.0",
            "-i",
            source_url,
            "-c:v",
            "libx264",
            "-c:a",
            "aac",
            "-movflags",
            "faststart",
            "-force_key_frames",
            f"expr:gte(t,n_forced*{chunk})",
            "-sc_threshold",
            "0",
            "-f",
            "segment",
            "-segment_time",
            chunk,
            "-reset_timestamps",
            "1",
            "-segment_start_number",
            "0",
            "-segment_format",
            "mp4",
            output_pattern,
        ]

    async def start(self, source_url: str, chunk_duration: float, output_pattern: str) -> TranscodeProcess:
        cmd = self.build_command(source_url, chunk_duration, output_pattern)
        log.info(f"ffmpeg segmenter starting: {' '.join(cmd)}")

        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        return TranscodeProcess(process, cmd)


class FFprobe:
    """Best-effort media duration probe."""

    def __init__(self, ffprobe_path: str = "ffprobe", timeout: float = 30.0):
        self._ffprobe_path = ffprobe_path
        self._timeout = timeout

    @property
    def ffprobe_path(self) -> str:
        return resolve_binary(self._ffprobe_path, "ffprobe")

    async def probe_duration(self, path: Path | str) -> Optional[float]:
        cmd = [
            self.ffprobe_path,
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            str(path),
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            log.warning(f"ffprobe could not be started: {e}")
            return None

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            log.debug(f"ffprobe timed out on {path}")
            return None

        if process.returncode != 0:
            log.debug(
                f"ffprobe failed on {path} (code={process.returncode}): "
                f"{stderr.decode('utf-8', errors='ignore').strip()}"
            )
            return None

        value = stdout.decode("utf-8", errors="ignore").strip()
        try:
            return float(value)
        except ValueError:
            log.debug(f"ffprobe returned no duration for {path}: {value!r}")
            return None
