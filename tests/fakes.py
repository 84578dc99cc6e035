"""In-test stand-ins for the external collaborators."""

import asyncio
from pathlib import Path
from typing import Dict, List, Optional

from services.capture.ffmpeg import TranscoderEvent


class FakeProcess:
    def __init__(self, *, finish_after: Optional[float] = None, exit_error: Optional[str] = None):
        self.command = ["ffmpeg", "-fake"]
        self._finish_after = finish_after
        self._exit_error = exit_error
        self._finished = asyncio.Event()
        self._returncode: Optional[int] = None
        self.terminated = False

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode

    def finish(self) -> None:
        self._finished.set()

    def terminate(self) -> None:
        self.terminated = True
        self._finished.set()

    async def events(self):
        yield TranscoderEvent(kind="start")
        yield TranscoderEvent(kind="progress", timemark="00:00:01.00", fps=25.0, throughput="1200kbits/s")
        if self._finish_after is not None:
            try:
                await asyncio.wait_for(self._finished.wait(), timeout=self._finish_after)
            except asyncio.TimeoutError:
                pass
        else:
            await self._finished.wait()

        if self.terminated:
            self._returncode = -15
            yield TranscoderEvent(kind="error", message="terminated")
        elif self._exit_error:
            self._returncode = 1
            yield TranscoderEvent(kind="error", message=self._exit_error)
        else:
            self._returncode = 0
            yield TranscoderEvent(kind="end")


class FakeTranscoder:
    """Writes the given segment files into the work dir when started."""

    def __init__(self, segments: Dict[str, bytes], process: FakeProcess, fail: Optional[Exception] = None):
        self._segments = segments
        self.process = process
        self._fail = fail
        self.started_with: List[tuple] = []

    async def start(self, source_url: str, chunk_duration: float, output_pattern: str):
        self.started_with.append((source_url, chunk_duration, output_pattern))
        if self._fail is not None:
            raise self._fail
        work_dir = Path(output_pattern).parent
        for name, data in self._segments.items():
            (work_dir / name).write_bytes(data)
        return self.process


class FakeProbe:
    def __init__(self, durations: Dict[str, Optional[float]]):
        self.durations = durations

    async def probe_duration(self, path) -> Optional[float]:
        return self.durations.get(Path(path).name)


class FakeProber:
    def __init__(self, available: bool = True):
        self.available = available
        self.calls: List[str] = []

    async def __call__(self, url: str) -> bool:
        self.calls.append(url)
        return self.available


class ScriptedEngine:
    """Replays a fixed list of capture events."""

    def __init__(self, events):
        self._events = list(events)
        self.closed = False

    async def events(self):
        try:
            for event in self._events:
                await asyncio.sleep(0)
                yield event
        finally:
            self.closed = True


class ConcatAssembler:
    """Concatenates chunk bytes instead of running ffmpeg."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: List[list] = []

    async def assemble(self, ordered_paths, output_dir, final_name="complete.mp4", *, label="assembly"):
        from services.recording.assembler import AssemblyResult

        paths = [Path(p) for p in ordered_paths]
        self.calls.append([p.name for p in paths])
        if self.fail or not paths:
            return AssemblyResult(ok=False, segments=len(paths), error="concat failed")
        output = Path(output_dir) / final_name
        output.write_bytes(b"".join(p.read_bytes() for p in paths))
        return AssemblyResult(ok=True, output_path=output, size_bytes=output.stat().st_size, segments=len(paths))


class FakeUploader:
    save_path = "stream_backup"

    def __init__(self, fail_names=()):
        self.fail_names = set(fail_names)
        self.uploaded: List[str] = []

    async def upload(self, key, local_path):
        from services.storage.s3 import StorageError, UploadResult

        if Path(local_path).name in self.fail_names or "*" in self.fail_names:
            raise StorageError(f"upload of {key} refused")
        self.uploaded.append(key)
        return UploadResult(published_url=f"https://signed.example.com/{key}?sig=1", key=key)


class RecordingNotifier:
    def __init__(self):
        self.fired: List[tuple] = []

    def fire(self, event_type, payload):
        self.fired.append((event_type, payload))
        return None

    async def drain(self, timeout=None):
        return None


async def passthrough_selector(name, url, preference="lowest"):
    return url
