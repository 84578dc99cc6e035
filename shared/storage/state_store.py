"""
In-process live-state store.

One StreamState per configured stream, created at construction and never
replaced as a key. Readers always receive deep copies; writers go through
update_stream(), which re-reads the latest entry under the lock, applies the
change to a copy and swaps in a new top-level mapping. A stream's session
only ever writes its own key, so concurrent sessions cannot clobber each
other's sub-trees.
"""

from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional

from shared.config.recorder import StreamConfig
from shared.logging.logger import get_logger
from shared.storage.state_publisher import StateSnapshotPublisher

_log = get_logger("shared.state_store")

LIVE_STATE_FILE = "live_state.json"
GLOBAL_STATE_FILE = "global_state.json"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class StreamState:
    url: str = ""
    session_id: str = ""
    is_active: bool = False
    current_timemark: str = ""
    file_events: List[str] = field(default_factory=list)
    last_active_time: Optional[str] = None
    uploaded_files: List[Dict[str, Any]] = field(default_factory=list)
    ping_history: List[bool] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ArtifactRecord:
    name: str
    location: str
    created_at: str
    size: str
    size_bytes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def ping_history_string(history: Iterable[bool]) -> str:
    return "".join("O" if active else "_" for active in history)


class LiveStateStore:
    def __init__(
        self,
        streams: Iterable[StreamConfig],
        *,
        ping_history_size: int = 96,
        file_log_size: int = 10,
        publisher: Optional[StateSnapshotPublisher] = None,
    ):
        self._lock = Lock()
        self._ping_history_size = max(1, int(ping_history_size))
        self._file_log_size = max(1, int(file_log_size))
        self._publisher = publisher

        self._states: Dict[str, StreamState] = {}
        for stream in streams:
            self._states[stream.name] = StreamState(
                url=stream.url,
                ping_history=[False] * self._ping_history_size,
            )
        self._artifacts: List[ArtifactRecord] = []

    # ------------------------------------------------------------
    # Reads (deep snapshots)
    # ------------------------------------------------------------

    def stream_names(self) -> List[str]:
        with self._lock:
            return list(self._states.keys())

    def snapshot(self) -> Dict[str, StreamState]:
        with self._lock:
            return copy.deepcopy(self._states)

    def get_stream(self, name: str) -> StreamState:
        with self._lock:
            if name not in self._states:
                raise KeyError(f"Unknown stream: {name}")
            return copy.deepcopy(self._states[name])

    def artifacts(self) -> List[ArtifactRecord]:
        with self._lock:
            return copy.deepcopy(self._artifacts)

    def live_state(self) -> Dict[str, Any]:
        """JSON-ready per-stream snapshot for the status query interface."""
        states = self.snapshot()
        payload: Dict[str, Any] = {}
        for name, state in states.items():
            entry = state.to_dict()
            entry["ping_history_string"] = ping_history_string(state.ping_history)
            payload[name] = entry
        return payload

    def live_state_document(self) -> Dict[str, Any]:
        return {"timestamp": _utc_now_iso(), "states": self.live_state()}

    def global_state(self) -> Dict[str, Any]:
        return {"artifacts": [record.to_dict() for record in self.artifacts()]}

    # ------------------------------------------------------------
    # Writes (read-modify-write of a single key)
    # ------------------------------------------------------------

    def update_stream(self, name: str, mutator: Callable[[StreamState], None]) -> StreamState:
        with self._lock:
            if name not in self._states:
                raise KeyError(f"Unknown stream: {name}")
            updated = copy.deepcopy(self._states[name])
            mutator(updated)
            states = dict(self._states)
            states[name] = updated
            self._states = states
            result = copy.deepcopy(updated)
        self._publish()
        return result

    def mark_active(self, name: str, session_id: str) -> StreamState:
        def _apply(state: StreamState) -> None:
            state.session_id = session_id
            state.is_active = True
            state.last_active_time = _utc_now_iso()

        return self.update_stream(name, _apply)

    def mark_inactive(self, name: str) -> StreamState:
        def _apply(state: StreamState) -> None:
            state.is_active = False

        return self.update_stream(name, _apply)

    def reset_to_idle(self, name: str) -> StreamState:
        """Return the stream to its idle shape; ping history and last-active time survive."""

        def _apply(state: StreamState) -> None:
            state.session_id = ""
            state.is_active = False
            state.current_timemark = ""
            state.file_events = []
            state.uploaded_files = []

        return self.update_stream(name, _apply)

    def record_progress(self, name: str, timemark: str) -> StreamState:
        def _apply(state: StreamState) -> None:
            state.current_timemark = timemark

        return self.update_stream(name, _apply)

    def record_file_event(self, name: str, message: str) -> StreamState:
        stamp = datetime.now(timezone.utc).strftime("%H:%M:%S")
        limit = self._file_log_size

        def _apply(state: StreamState) -> None:
            state.file_events.append(f"[{stamp}] {message}")
            if len(state.file_events) > limit:
                del state.file_events[0 : len(state.file_events) - limit]

        return self.update_stream(name, _apply)

    def record_uploaded_file(self, name: str, location: str, size: int) -> StreamState:
        def _apply(state: StreamState) -> None:
            state.uploaded_files.append({"location": location, "size": int(size)})

        return self.update_stream(name, _apply)

    def rotate_ping_history(self) -> None:
        """Shift every ring buffer one slot: oldest out, current active flag in."""
        with self._lock:
            states: Dict[str, StreamState] = {}
            for name, state in self._states.items():
                updated = copy.deepcopy(state)
                history = list(updated.ping_history[-self._ping_history_size:])
                if len(history) >= self._ping_history_size:
                    history = history[1:]
                history.append(updated.is_active)
                updated.ping_history = history
                states[name] = updated
            self._states = states
        self._publish()

    def append_artifact(self, record: ArtifactRecord) -> None:
        with self._lock:
            self._artifacts = self._artifacts + [copy.deepcopy(record)]
        _log.info(f"Artifact recorded: {record.name} -> {record.location}")
        self._publish()

    # ------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------

    def _publish(self) -> None:
        if not self._publisher:
            return
        try:
            self._publisher.publish(LIVE_STATE_FILE, self.live_state_document())
            self._publisher.publish(GLOBAL_STATE_FILE, self.global_state())
        except Exception as e:
            _log.error(f"Failed to publish state snapshot: {e}")
