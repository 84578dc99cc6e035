"""
Stream scheduler.

Periodically probes every configured stream and starts a recording session
for each one that is live. At most one session per stream is in flight: the
slot is claimed before the probe, so overlapping ticks and retries can never
start a second capture of the same stream.
"""

import asyncio
import uuid
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from core.session import SessionResult
from services.hls.availability import is_available
from services.webhooks import notifier as webhook_events
from services.webhooks.notifier import WebhookNotifier
from shared.config.recorder import SchedulerSettings, StreamConfig
from shared.logging.logger import get_logger
from shared.storage.state_store import LiveStateStore

log = get_logger("core.scheduler")

SessionFactory = Callable[[StreamConfig, str], Any]
Prober = Callable[[str], Awaitable[bool]]


class StreamScheduler:
    def __init__(
        self,
        streams: Iterable[StreamConfig],
        settings: SchedulerSettings,
        store: LiveStateStore,
        *,
        session_factory: SessionFactory,
        prober: Prober = is_available,
        notifier: Optional[WebhookNotifier] = None,
        usage_sampler: Optional[Callable[[], Any]] = None,
    ):
        self._streams: Dict[str, StreamConfig] = {s.name: s for s in streams}
        self._settings = settings
        self._store = store
        self._session_factory = session_factory
        self._prober = prober
        self._notifier = notifier
        self._usage_sampler = usage_sampler

        # stream name -> claimed single-flight slot
        self._active: Set[str] = set()

        self._stream_tasks: Set[asyncio.Task] = set()
        self._retry_tasks: Dict[str, asyncio.Task] = {}
        self._timer_tasks: List[asyncio.Task] = []
        self._stopping = False

    # ------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------

    @property
    def streams(self) -> List[StreamConfig]:
        return list(self._streams.values())

    def active_streams(self) -> List[str]:
        return sorted(self._active)

    def pending_retries(self) -> List[str]:
        return sorted(name for name, task in self._retry_tasks.items() if not task.done())

    # ------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------

    def tick(self) -> List[asyncio.Task]:
        """Start a probe for every stream that has no session in flight."""
        if self._stopping:
            return []

        created: List[asyncio.Task] = []
        for stream in self._streams.values():
            if stream.name in self._active:
                log.debug(f"[{stream.name}] Session in flight; skipping check")
                continue
            created.append(self._spawn(stream))
        return created

    def _spawn(self, stream: StreamConfig) -> asyncio.Task:
        task = asyncio.create_task(self.process_stream(stream))
        self._stream_tasks.add(task)
        task.add_done_callback(self._stream_tasks.discard)
        return task

    async def process_stream(self, stream: StreamConfig) -> Optional[SessionResult]:
        name = stream.name
        if name in self._active:
            log.debug(f"[{name}] Already being processed")
            return None
        self._active.add(name)

        try:
            log.debug(f"[{name}] Checking stream availability")
            try:
                available = await self._prober(stream.url)
            except Exception as e:
                log.warning(f"[{name}] Availability probe raised: {e}")
                available = False

            if not available:
                log.info(f"[{name}] Stream is not available")
                self._store.mark_inactive(name)
                return None

            if self._stopping:
                log.info(f"[{name}] Stream available but scheduler is stopping; not recording")
                return None

            return await self._record(stream)
        finally:
            self._active.discard(name)

    async def _record(self, stream: StreamConfig) -> Optional[SessionResult]:
        name = stream.name
        session_id = uuid.uuid4().hex
        result: Optional[SessionResult] = None
        faulted = False

        log.info(f"[{name}] Stream is live; starting session {session_id}")
        self._store.mark_active(name, session_id)
        self._notify(webhook_events.STREAM_START, {"name": name, "sessionId": session_id, "url": stream.url})

        try:
            session = self._session_factory(stream, session_id)
            result = await session.run()
            if result is not None and result.faulted:
                faulted = True
                log.error(f"[{name}] Session {session_id} ended with engine error: {result.engine_error}")
            else:
                log.info(f"[{name}] Session {session_id} complete")
        except asyncio.CancelledError:
            log.warning(f"[{name}] Session {session_id} cancelled")
            raise
        except Exception:
            faulted = True
            log.exception(f"[{name}] Session {session_id} failed")
        finally:
            self._notify(
                webhook_events.STREAM_END,
                {
                    "name": name,
                    "sessionId": session_id,
                    "error": result.engine_error if result is not None else None,
                },
            )
            self._store.reset_to_idle(name)

        if faulted:
            self._schedule_retry(stream)
        return result

    # ------------------------------------------------------------
    # Retries
    # ------------------------------------------------------------

    def _schedule_retry(self, stream: StreamConfig) -> None:
        if self._stopping:
            return
        existing = self._retry_tasks.get(stream.name)
        if existing is not None and not existing.done():
            return

        delay = self._settings.retry_delay_seconds
        log.info(f"[{stream.name}] Retrying in {delay:g}s")
        self._retry_tasks[stream.name] = asyncio.create_task(self._retry_after(stream, delay))

    async def _retry_after(self, stream: StreamConfig, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._stopping:
            return
        self._spawn(stream)

    # ------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------

    def rotate_ping_history(self) -> None:
        self._store.rotate_ping_history()
        log.debug("Ping history rotated")

    def start(self) -> None:
        if self._timer_tasks:
            return
        self._stopping = False
        self._timer_tasks.append(asyncio.create_task(self._tick_loop()))
        self._timer_tasks.append(asyncio.create_task(self._ping_loop()))
        if self._usage_sampler is not None:
            self._timer_tasks.append(asyncio.create_task(self._usage_loop()))
        log.info(
            f"Scheduler started: {len(self._streams)} stream(s), "
            f"check every {self._settings.check_interval_seconds:g}s"
        )

    async def _tick_loop(self) -> None:
        try:
            while True:
                self.tick()
                await asyncio.sleep(self._settings.check_interval_seconds)
        except asyncio.CancelledError:
            log.debug("Tick loop cancelled")
            raise

    async def _ping_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._settings.ping_interval_seconds)
                self.rotate_ping_history()
        except asyncio.CancelledError:
            log.debug("Ping loop cancelled")
            raise

    async def _usage_loop(self) -> None:
        try:
            while True:
                try:
                    self._usage_sampler()
                except Exception as e:
                    log.warning(f"Usage sampling failed: {e}")
                await asyncio.sleep(self._settings.usage_interval_seconds)
        except asyncio.CancelledError:
            log.debug("Usage loop cancelled")
            raise

    async def stop(self) -> None:
        """Stop timers and pending retries; in-flight sessions keep running."""
        log.info("Scheduler stop initiated")
        self._stopping = True

        pending = self._timer_tasks + list(self._retry_tasks.values())
        for task in pending:
            if not task.done():
                task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self._timer_tasks = []
        self._retry_tasks.clear()

    async def wait_for_sessions(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for in-flight stream tasks to finish.

        Returns False when the timeout elapsed; the remaining tasks are then
        cancelled, which drives their sessions through the forced-end path.
        """
        tasks = [t for t in self._stream_tasks if not t.done()]
        if not tasks:
            return True

        log.info(f"Waiting for {len(tasks)} session(s) to finish: {self.active_streams()}")
        done, not_done = await asyncio.wait(tasks, timeout=timeout)
        if not not_done:
            return True

        log.warning(f"{len(not_done)} session(s) still running after {timeout}s; cancelling")
        for task in not_done:
            task.cancel()
        await asyncio.gather(*not_done, return_exceptions=True)
        return False

    # ------------------------------------------------------------

    def _notify(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self._notifier is not None:
            self._notifier.fire(event_type, payload)
