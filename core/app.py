import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from core.scheduler import StreamScheduler
from core.session import RecordingSession
from runtime import version
from services.capture.engine import CaptureEngine
from services.capture.ffmpeg import FFmpegSegmenter, FFprobe
from services.hls.availability import is_available
from services.recording.assembler import SegmentAssembler
from services.status_api.server import StatusApiServer
from services.storage.s3 import S3Uploader, StorageError
from services.system.usage import log_usage
from services.webhooks.notifier import WebhookNotifier
from shared.config.recorder import RecorderConfig, StreamConfig, load_recorder_config
from shared.logging.logger import get_logger
from shared.storage.state_publisher import StateSnapshotPublisher
from shared.storage.state_store import LiveStateStore

log = get_logger("core.app")


def _work_dir_name(name: str) -> str:
    return "".join(c if c.isalnum() or c in "-_" else "_" for c in name) or "stream"


def build_scheduler(
    config: RecorderConfig,
    store: LiveStateStore,
    notifier: WebhookNotifier,
    uploader: Optional[S3Uploader],
) -> StreamScheduler:
    transcoder = FFmpegSegmenter(config.capture.ffmpeg_path)
    probe = FFprobe(config.capture.ffprobe_path, timeout=config.capture.probe_timeout_seconds)
    assembler = SegmentAssembler(config.capture.ffmpeg_path)
    work_root = Path(config.capture.work_root)

    def engine_factory(stream: StreamConfig, source_url: str) -> CaptureEngine:
        return CaptureEngine(
            stream.name,
            source_url,
            stream.chunk_duration,
            work_root / _work_dir_name(stream.name),
            config.capture,
            transcoder=transcoder,
            probe=probe,
            is_available=is_available,
            availability_url=stream.url,
        )

    def session_factory(stream: StreamConfig, session_id: str) -> RecordingSession:
        return RecordingSession(
            stream,
            session_id,
            store=store,
            settings=config.scheduler,
            engine_factory=engine_factory,
            assembler=assembler,
            uploader=uploader,
            notifier=notifier,
            upload_failure_policy=config.upload_failure_policy,
        )

    return StreamScheduler(
        config.streams,
        config.scheduler,
        store,
        session_factory=session_factory,
        prober=is_available,
        notifier=notifier,
        usage_sampler=log_usage,
    )


async def main(stop_event: asyncio.Event):
    # --------------------------------------------------
    # ENV
    # --------------------------------------------------
    load_dotenv()
    log.info("Environment variables loaded")
    log.info(f"{version.as_string()} booting")

    config = load_recorder_config()
    if not config.streams:
        log.warning("No streams configured (STREAM_DATA is empty); scheduler will idle")

    # --------------------------------------------------
    # CORE SYSTEMS
    # --------------------------------------------------
    store = LiveStateStore(
        config.streams,
        ping_history_size=config.scheduler.ping_history_size,
        file_log_size=config.scheduler.file_log_size,
        publisher=StateSnapshotPublisher(),
    )
    notifier = WebhookNotifier(config.webhook, config.server_tag)

    uploader: Optional[S3Uploader] = None
    if config.aws.enabled:
        try:
            uploader = S3Uploader(config.aws)
            log.info(f"S3 uploads enabled (bucket={config.aws.bucket})")
        except StorageError as e:
            log.error(f"S3 uploader unavailable; uploads disabled: {e}")
    else:
        log.info("S3 uploads disabled (AWS_S3_BUCKET not set)")

    scheduler = build_scheduler(config, store, notifier, uploader)
    status_server = StatusApiServer(config.status_api, store)

    # --------------------------------------------------
    # START
    # --------------------------------------------------
    try:
        status_server.start()
    except OSError as e:
        log.error(f"Status API server failed to start: {e}")

    scheduler.start()

    # --------------------------------------------------
    # BLOCK UNTIL SHUTDOWN SIGNAL
    # --------------------------------------------------
    await stop_event.wait()

    log.info("Shutdown initiated")

    # --------------------------------------------------
    # ORDERLY SHUTDOWN: TIMERS, THEN SESSIONS
    # --------------------------------------------------
    try:
        await scheduler.stop()
    except Exception as e:
        log.warning(f"Scheduler stop error ignored: {e}")

    try:
        await scheduler.wait_for_sessions(config.scheduler.shutdown_grace_seconds)
    except Exception as e:
        log.warning(f"Session shutdown error ignored: {e}")

    await notifier.drain(timeout=config.webhook.timeout_seconds)
    status_server.stop()

    log.info("HLS recorder stopped")


# ----------------------------------------------------------------------
# SIGNAL HANDLING (WINDOWS-SAFE)
# ----------------------------------------------------------------------

def _install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    stop_event: asyncio.Event,
):
    """
    Windows-safe Ctrl+C handler.
    Uses signal.signal + asyncio.Event to unwind cleanly.
    """

    def _handler(signum, frame):
        log.info(f"Signal {signum} received")
        loop.call_soon_threadsafe(stop_event.set)

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError as e:
        log.warning(f"Signal handlers not installed: {e}")


# ----------------------------------------------------------------------
# ENTRYPOINT
# ----------------------------------------------------------------------

def run():
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    stop_event = asyncio.Event()
    _install_signal_handlers(loop, stop_event)

    try:
        loop.run_until_complete(main(stop_event))

    except KeyboardInterrupt:
        log.info("KeyboardInterrupt received; shutdown initiated")

    finally:
        # --------------------------------------------------
        # CANCEL REMAINING TASKS (CLEANLY)
        # --------------------------------------------------
        pending = [t for t in asyncio.all_tasks(loop) if not t.done()]
        for task in pending:
            task.cancel()

        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))

        # --------------------------------------------------
        # FINAL LOOP CLEANUP
        # --------------------------------------------------
        loop.run_until_complete(loop.shutdown_asyncgens())

        asyncio.set_event_loop(None)
        loop.close()


if __name__ == "__main__":
    run()
    sys.exit(0)
