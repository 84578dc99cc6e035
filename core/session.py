"""
Recording session: one capture of one stream, from variant selection to the
final artifact.

The session is the single consumer of its engine's event stream. Segments are
persisted (and optionally uploaded) in the order the engine hands them off;
once the engine reports CaptureEnded the persisted chunks are assembled into
one file, which is uploaded and recorded as an artifact.
"""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional

from services.capture.events import (
    CaptureEnded,
    CaptureEvent,
    CaptureProgress,
    CaptureStarted,
    SegmentProbed,
    SegmentReady,
)
from services.hls.quality import select_variant
from services.recording.assembler import AssemblyResult, SegmentAssembler
from services.storage.s3 import S3Uploader, StorageError, build_object_key
from services.webhooks import notifier as webhook_events
from services.webhooks.notifier import WebhookNotifier
from shared.config.recorder import SchedulerSettings, StreamConfig
from shared.logging.logger import get_logger
from shared.storage.state_store import ArtifactRecord, LiveStateStore
from shared.utils.sizes import bytes_to_size

log = get_logger("core.session")

CHUNK_PREFIX = "chunk-"
CHUNK_SUFFIX = ".mp4"

EngineFactory = Callable[[StreamConfig, str], Any]
VariantSelector = Callable[..., Awaitable[str]]


def _file_timestamp(moment: Optional[datetime] = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H-%M-%S.") + f"{moment.microsecond // 1000:03d}Z"


def chunk_filename(index: int, timestamp: Optional[str] = None) -> str:
    return f"{CHUNK_PREFIX}{index:05d}-{timestamp or _file_timestamp()}{CHUNK_SUFFIX}"


def list_chunks(directory: Path) -> List[Path]:
    """Persisted chunks of a session directory, in capture order."""
    try:
        entries = [
            p for p in directory.iterdir()
            if p.is_file() and p.name.startswith(CHUNK_PREFIX) and p.name.endswith(CHUNK_SUFFIX)
        ]
    except FileNotFoundError:
        return []
    return sorted(entries, key=lambda p: p.name)


@dataclass
class SessionResult:
    session_id: str
    output_dir: Path
    segments: int = 0
    assembly: Optional[AssemblyResult] = None
    engine_error: Optional[str] = None
    write_errors: int = 0
    upload_errors: int = 0

    @property
    def faulted(self) -> bool:
        return self.engine_error is not None


class RecordingSession:
    def __init__(
        self,
        stream: StreamConfig,
        session_id: str,
        *,
        store: LiveStateStore,
        settings: SchedulerSettings,
        engine_factory: EngineFactory,
        assembler: SegmentAssembler,
        uploader: Optional[S3Uploader] = None,
        notifier: Optional[WebhookNotifier] = None,
        variant_selector: VariantSelector = select_variant,
        upload_failure_policy: str = "keep",
    ):
        self._stream = stream
        self._session_id = session_id
        self._store = store
        self._settings = settings
        self._engine_factory = engine_factory
        self._assembler = assembler
        self._uploader = uploader
        self._notifier = notifier
        self._variant_selector = variant_selector
        self._upload_failure_policy = upload_failure_policy

        self._started_at = _file_timestamp()
        self._output_dir = Path(settings.output_base_dir) / stream.name / self._started_at
        self._result = SessionResult(session_id=session_id, output_dir=self._output_dir)

    @property
    def name(self) -> str:
        return self._stream.name

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    @property
    def uploads_enabled(self) -> bool:
        return self._stream.upload_enabled and self._uploader is not None

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------

    async def run(self) -> SessionResult:
        self._prepare_output_dir()

        source_url = await self._variant_selector(
            self.name, self._stream.url, self._stream.quality
        )
        engine = self._engine_factory(self._stream, source_url)

        stream_events = engine.events()
        try:
            async for event in stream_events:
                await self._handle(event)
                if isinstance(event, CaptureEnded):
                    break
        finally:
            await stream_events.aclose()

        return self._result

    async def _handle(self, event: CaptureEvent) -> None:
        if isinstance(event, CaptureStarted):
            log.info(f"[{self.name}] Capture running; chunks go to {self._output_dir}")
        elif isinstance(event, CaptureProgress):
            self._store.record_progress(self.name, event.describe())
        elif isinstance(event, SegmentProbed):
            self._store.record_file_event(self.name, event.describe())
        elif isinstance(event, SegmentReady):
            await self._persist_segment(event)
        elif isinstance(event, CaptureEnded):
            await self._finalize(event)

    def _prepare_output_dir(self) -> None:
        if self._output_dir.exists():
            log.warning(f"[{self.name}] Clearing existing output dir {self._output_dir}")
            shutil.rmtree(self._output_dir)
        self._output_dir.mkdir(parents=True)

    # ------------------------------------------------------------
    # Segment sink
    # ------------------------------------------------------------

    async def _persist_segment(self, event: SegmentReady) -> None:
        filename = chunk_filename(event.index)
        local_path = self._output_dir / filename

        try:
            await asyncio.to_thread(local_path.write_bytes, event.data)
        except OSError as e:
            self._result.write_errors += 1
            log.error(f"[{self.name}] Error saving {filename}: {e}")
            self._store.record_file_event(self.name, f"{filename} save failed")
            return

        self._result.segments += 1
        log.info(f"[{self.name}] Local Save {local_path}")
        self._store.record_file_event(self.name, f"Saved {filename} ({bytes_to_size(len(event.data))})")

        if not self.uploads_enabled:
            return

        key = build_object_key(self._uploader.save_path, self.name, self._started_at, filename)
        try:
            upload = await self._uploader.upload(key, local_path)
        except StorageError as e:
            self._result.upload_errors += 1
            log.error(f"[{self.name}] Chunk upload failed: {e}")
            self._store.record_file_event(self.name, f"{filename} upload failed")
            if self._upload_failure_policy == "purge":
                self._remove(local_path)
            return

        log.info(f"[{self.name}] S3 Upload {key}")
        self._store.record_uploaded_file(self.name, upload.published_url, len(event.data))
        self._notify(
            webhook_events.CHUNK_UPLOAD,
            {
                "name": self.name,
                "sessionId": self._session_id,
                "file": filename,
                "index": event.index,
                "location": upload.published_url,
                "size": len(event.data),
            },
        )

    # ------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------

    async def _finalize(self, ended: CaptureEnded) -> None:
        if ended.faulted:
            self._result.engine_error = ended.error or "capture error"
            log.error(f"[{self.name}] Capture ended with error: {self._result.engine_error}")
        elif ended.reason == "failsafe":
            log.warning(f"[{self.name}] Capture ended by failsafe timeout")
        else:
            log.info(f"[{self.name}] Capture ended")

        if ended.remaining:
            log.warning(f"[{self.name}] Unprocessed files at capture end: {ended.remaining}")

        chunks = list_chunks(self._output_dir)
        if not chunks:
            log.info(f"[{self.name}] No chunks persisted; nothing to assemble")
            return

        final_name = self._settings.final_name
        assembly = await self._assembler.assemble(
            chunks, self._output_dir, final_name, label=self.name
        )
        self._result.assembly = assembly

        if not assembly.ok:
            log.error(
                f"[{self.name}] Assembly failed ({assembly.error}); "
                f"{len(chunks)} chunk(s) kept in {self._output_dir}"
            )
            return

        for chunk in chunks:
            self._remove(chunk)

        location = str(assembly.output_path)
        uploaded = False
        if self.uploads_enabled:
            key = build_object_key(self._uploader.save_path, self.name, self._started_at, final_name)
            try:
                upload = await self._uploader.upload(key, assembly.output_path)
            except StorageError as e:
                self._result.upload_errors += 1
                log.error(f"[{self.name}] Final upload failed; keeping local file: {e}")
            else:
                location = upload.published_url
                uploaded = True
                self._store.record_uploaded_file(self.name, location, assembly.size_bytes)

        record = ArtifactRecord(
            name=f"{self.name}/{self._started_at}/{final_name}",
            location=location,
            created_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            size=bytes_to_size(assembly.size_bytes),
            size_bytes=assembly.size_bytes,
        )
        self._store.append_artifact(record)

        if uploaded:
            self._notify(
                webhook_events.COMPLETE_UPLOAD,
                {
                    "name": self.name,
                    "sessionId": self._session_id,
                    "location": location,
                    "size": assembly.size_bytes,
                    "segments": assembly.segments,
                },
            )

    # ------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------

    def _notify(self, event_type: str, payload: dict) -> None:
        if self._notifier is not None:
            self._notifier.fire(event_type, payload)

    def _remove(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning(f"[{self.name}] Failed to remove {path.name}: {e}")
