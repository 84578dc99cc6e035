"""
Segmentation engine.

Drives an external segmenting transcoder into a private working directory and
surfaces each finished segment to the owning session as a typed event.

ffmpeg does not finalize segment files atomically, so readiness is decided by
a periodic reconciliation pass over the directory: a segment is handed off
once its probed duration reaches the chunk target, or once the upstream
source is known to be gone. Termination (clean end, crash, or the failsafe
ceiling) always goes through a bounded drain and ends with exactly one
CaptureEnded event.
"""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Protocol, Set

from services.capture.events import (
    CaptureEnded,
    CaptureEvent,
    CaptureProgress,
    CaptureStarted,
    SegmentProbed,
    SegmentReady,
)
from services.capture.ffmpeg import TranscoderEvent
from shared.config.recorder import CaptureSettings
from shared.logging.logger import get_logger

log = get_logger("services.capture.engine")

Emit = Callable[[CaptureEvent], Awaitable[None]]


class CaptureError(RuntimeError):
    """Raised from CaptureEngine.events() when the capture could not run."""


class TranscoderProcess(Protocol):
    command: List[str]

    @property
    def returncode(self) -> Optional[int]: ...

    def events(self) -> AsyncIterator[TranscoderEvent]: ...

    def terminate(self) -> None: ...


class Transcoder(Protocol):
    async def start(
        self, source_url: str, chunk_duration: float, output_pattern: str
    ) -> TranscoderProcess: ...


class DurationProbe(Protocol):
    async def probe_duration(self, path: Path) -> Optional[float]: ...


@dataclass(frozen=True)
class _EngineFault:
    error: BaseException


def is_segment_ready(
    duration: Optional[float],
    target: float,
    *,
    eol_at: Optional[float],
    now: float,
    confirm_seconds: float,
    tolerance: float = 0.0,
) -> bool:
    """
    Segment hand-off rule for a successfully probed file.

    A file is ready once its duration is within `tolerance` seconds of the
    target (ffprobe rounds container durations), or once end-of-life has
    been recorded for at least `confirm_seconds`.
    """
    if duration is not None and duration >= target - tolerance:
        return True
    if eol_at is not None and now - eol_at >= confirm_seconds:
        return True
    return False


class CaptureEngine:
    def __init__(
        self,
        name: str,
        source_url: str,
        chunk_duration: float,
        work_dir: Path | str,
        settings: CaptureSettings,
        *,
        transcoder: Transcoder,
        probe: DurationProbe,
        is_available: Callable[[str], Awaitable[bool]],
        availability_url: Optional[str] = None,
        process_stop_timeout: float = 10.0,
    ):
        self._name = name
        self._source_url = source_url
        self._chunk_duration = float(chunk_duration)
        self._work_dir = Path(work_dir)
        self._settings = settings
        self._transcoder = transcoder
        self._probe = probe
        self._is_available = is_available
        self._availability_url = availability_url or source_url
        self._process_stop_timeout = process_stop_timeout
        self._segment_suffix = Path(settings.segment_pattern).suffix or ".mp4"

        self._eol_at: Optional[float] = None
        self._force_end = False
        self._end_reason: Optional[str] = None
        self._end_error: Optional[str] = None
        self._terminated = asyncio.Event()
        self._stop_polling = asyncio.Event()
        self._handed_off: Set[str] = set()
        self._sequence = 0
        self._last_progress_at: Optional[float] = None
        self._ended_emitted = False

    # ------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------

    @property
    def work_dir(self) -> Path:
        return self._work_dir

    @property
    def end_of_life_at(self) -> Optional[float]:
        return self._eol_at

    def mark_end_of_life(self) -> None:
        if self._eol_at is None:
            self._eol_at = asyncio.get_running_loop().time()
            log.info(f"[{self._name}] Source end-of-life recorded")

    def request_stop(self) -> None:
        """Force the drain path on the next poll cycle."""
        self._force_end = True
        self._set_termination("end", None)

    async def events(self) -> AsyncIterator[CaptureEvent]:
        queue: asyncio.Queue = asyncio.Queue()
        runner = asyncio.create_task(self._run(queue.put))
        finished = False
        try:
            while True:
                item = await queue.get()
                if isinstance(item, _EngineFault):
                    finished = True
                    raise CaptureError(f"[{self._name}] capture failed: {item.error}") from item.error
                yield item
                if isinstance(item, CaptureEnded):
                    finished = True
                    break
        finally:
            if not finished:
                self.request_stop()
            await asyncio.gather(runner, return_exceptions=True)

    # ------------------------------------------------------------
    # Capture lifecycle
    # ------------------------------------------------------------

    async def _run(self, emit: Emit) -> None:
        try:
            await self._capture(emit)
        except Exception as e:
            log.exception(f"[{self._name}] Capture engine fault")
            if not self._ended_emitted:
                await emit(_EngineFault(e))

    async def _capture(self, emit: Emit) -> None:
        self._prepare_work_dir()

        pattern = str(self._work_dir / self._settings.segment_pattern)
        try:
            process = await self._transcoder.start(self._source_url, self._chunk_duration, pattern)
        except Exception:
            self._release_work_dir()
            raise

        await emit(CaptureStarted(command=list(getattr(process, "command", []) or [])))
        log.info(f"[{self._name}] Capture started (chunk={self._chunk_duration:g}s, dir={self._work_dir})")

        monitor = asyncio.create_task(self._monitor_process(process, emit))
        poller = asyncio.create_task(self._poll_loop(emit))
        failsafe = asyncio.create_task(self._failsafe(process, monitor))

        try:
            await self._terminated.wait()
            log.info(f"[{self._name}] Capture terminating ({self._end_reason}); draining segments")
            await self._drain()
        finally:
            self._stop_polling.set()
            failsafe.cancel()
            await asyncio.gather(poller, failsafe, return_exceptions=True)

        remaining = self._list_remaining()
        if remaining:
            log.warning(f"[{self._name}] {len(remaining)} file(s) left in working dir: {remaining}")

        self._ended_emitted = True
        await emit(CaptureEnded(remaining=remaining, reason=self._end_reason or "end", error=self._end_error))

        await self._stop_process(process, monitor)
        self._release_work_dir()

    def _set_termination(self, reason: str, error: Optional[str]) -> None:
        if self._end_reason is None:
            self._end_reason = reason
            self._end_error = error
        self._terminated.set()

    async def _monitor_process(self, process: TranscoderProcess, emit: Emit) -> None:
        try:
            async for event in process.events():
                if event.kind == "start":
                    log.debug(f"[{self._name}] Transcoder reported start")
                elif event.kind == "progress":
                    await self._emit_progress(event, emit)
                elif event.kind == "end":
                    log.info(f"[{self._name}] Transcoder finished")
                    self.mark_end_of_life()
                    self._set_termination("end", None)
                elif event.kind == "error":
                    log.error(f"[{self._name}] Transcoder error: {event.message}")
                    self._set_termination("error", event.message or "transcoder error")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception(f"[{self._name}] Transcoder monitor failed")
            self._set_termination("error", str(e))
        else:
            if not self._terminated.is_set():
                self._set_termination("end", None)

    async def _emit_progress(self, event: TranscoderEvent, emit: Emit) -> None:
        now = asyncio.get_running_loop().time()
        if (
            self._last_progress_at is not None
            and now - self._last_progress_at < self._settings.progress_interval_seconds
        ):
            return
        self._last_progress_at = now
        progress = CaptureProgress(
            timemark=event.timemark or "",
            fps=event.fps,
            throughput=event.throughput,
        )
        log.debug(f"[{self._name}] Processing: {progress.describe()}")
        await emit(progress)

    async def _failsafe(self, process: TranscoderProcess, monitor: asyncio.Task) -> None:
        await asyncio.sleep(self._settings.failsafe_timeout_seconds)
        log.warning(
            f"[{self._name}] Failsafe timeout reached after "
            f"{self._settings.failsafe_timeout_seconds:g}s; stopping transcoder and draining"
        )
        self.mark_end_of_life()
        self._set_termination("failsafe", None)

        # the segment being written is only finalized once the transcoder exits
        try:
            process.terminate()
        except Exception as e:
            log.warning(f"[{self._name}] Failed to terminate transcoder: {e}")
            return
        try:
            await asyncio.wait_for(asyncio.shield(monitor), timeout=self._settings.failsafe_grace_seconds)
        except asyncio.TimeoutError:
            log.warning(
                f"[{self._name}] Transcoder still running "
                f"{self._settings.failsafe_grace_seconds:g}s after failsafe terminate"
            )

    async def _drain(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.drain_ceiling_seconds

        while not self._force_end:
            if not self._list_segments():
                log.debug(f"[{self._name}] Working dir drained")
                return
            remaining = deadline - loop.time()
            if remaining <= 0:
                log.warning(
                    f"[{self._name}] Drain ceiling of {self._settings.drain_ceiling_seconds:g}s reached"
                )
                return
            await asyncio.sleep(min(self._settings.drain_poll_seconds, remaining))

    async def _stop_process(self, process: TranscoderProcess, monitor: asyncio.Task) -> None:
        if process.returncode is None:
            log.warning(f"[{self._name}] Transcoder still running after capture end; terminating")
            try:
                process.terminate()
            except Exception as e:
                log.warning(f"[{self._name}] Failed to terminate transcoder: {e}")

        try:
            await asyncio.wait_for(asyncio.shield(monitor), timeout=self._process_stop_timeout)
        except asyncio.TimeoutError:
            log.warning(f"[{self._name}] Transcoder did not exit in time; abandoning monitor")
            monitor.cancel()
            await asyncio.gather(monitor, return_exceptions=True)

    # ------------------------------------------------------------
    # Readiness reconciliation
    # ------------------------------------------------------------

    async def _poll_loop(self, emit: Emit) -> None:
        while not self._stop_polling.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_polling.wait(),
                    timeout=self._settings.readiness_poll_seconds,
                )
                return
            except asyncio.TimeoutError:
                pass

            try:
                await self._poll_once(emit)
            except Exception:
                log.exception(f"[{self._name}] Readiness poll failed")

    async def _poll_once(self, emit: Emit) -> None:
        loop = asyncio.get_running_loop()
        availability_checked = False

        for path in self._list_segments():
            if path.name in self._handed_off:
                self._delete(path)
                continue

            try:
                duration = await self._probe.probe_duration(path)
            except Exception as e:
                log.warning(f"[{self._name}] Probe failed for {path.name}: {e}")
                duration = None

            if duration is None:
                log.debug(f"[{self._name}] {path.name} not yet probeable; retrying next poll")
                await emit(SegmentProbed(path.name, None, self._chunk_duration, False))
                continue

            ready = is_segment_ready(
                duration,
                self._chunk_duration,
                eol_at=self._eol_at,
                now=loop.time(),
                confirm_seconds=self._settings.eol_confirm_seconds,
                tolerance=self._settings.duration_tolerance_seconds,
            )
            if not ready and self._eol_at is None and not availability_checked:
                availability_checked = True
                if not await self._source_available():
                    self.mark_end_of_life()
                    ready = True

            await emit(SegmentProbed(path.name, duration, self._chunk_duration, ready))
            if ready:
                await self._hand_off(path, duration, emit)

    async def _source_available(self) -> bool:
        try:
            return bool(await self._is_available(self._availability_url))
        except Exception as e:
            log.warning(f"[{self._name}] Availability check failed: {e}")
            return True

    async def _hand_off(self, path: Path, duration: float, emit: Emit) -> None:
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            log.warning(f"[{self._name}] Failed to read {path.name}: {e}")
            return

        index = self._sequence
        self._sequence += 1
        self._handed_off.add(path.name)
        log.info(f"[{self._name}] Segment ready: {path.name} ({duration:.1f}s, {len(data)} bytes)")
        await emit(SegmentReady(index=index, name=path.name, data=data, duration=duration))
        self._delete(path)

    def _delete(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning(f"[{self._name}] Failed to delete {path.name}: {e}")

    # ------------------------------------------------------------
    # Working directory
    # ------------------------------------------------------------

    def _list_segments(self) -> List[Path]:
        try:
            entries = [
                p for p in self._work_dir.iterdir()
                if p.is_file() and p.suffix == self._segment_suffix
            ]
        except FileNotFoundError:
            return []
        return sorted(entries, key=lambda p: p.name)

    def _list_remaining(self) -> List[str]:
        try:
            return sorted(p.name for p in self._work_dir.iterdir())
        except FileNotFoundError:
            return []

    def _prepare_work_dir(self) -> None:
        if self._work_dir.exists():
            log.info(f"[{self._name}] Clearing stale working dir {self._work_dir}")
            shutil.rmtree(self._work_dir)
        self._work_dir.mkdir(parents=True)

    def _release_work_dir(self) -> None:
        try:
            shutil.rmtree(self._work_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning(f"[{self._name}] Failed to remove working dir {self._work_dir}: {e}")
