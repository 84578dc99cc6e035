"""
Live-state snapshot publisher.

This module centralizes atomic writes of the recorder's live/global state
snapshots and optional mirroring into a dashboard hosting directory.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from shared.logging.logger import get_logger

log = get_logger("shared.state_publisher")


class StateSnapshotPublisher:
    """
    Atomic snapshot writer with optional mirroring into a publish root
    (e.g. a directory served by the dashboard or a bucket mount).
    """

    DEFAULT_BASE_DIR = Path("state")
    ENV_KEYS = (
        "RECORDER_STATE_PUBLISH_ROOT",
    )

    def __init__(
        self,
        base_dir: Path | str | None = None,
        publish_root: Path | str | None = None,
    ):
        self._base_dir = Path(base_dir) if base_dir else self.DEFAULT_BASE_DIR
        self._base_dir.mkdir(parents=True, exist_ok=True)

        env_root = self._get_env_publish_root()
        self._publish_root = (
            Path(publish_root)
            if publish_root
            else (Path(env_root) if env_root else None)
        )

        if self._publish_root:
            self._publish_root.mkdir(parents=True, exist_ok=True)
            log.info(f"State publish root: {self._publish_root}")

    # ------------------------------------------------------------------
    # Environment helpers
    # ------------------------------------------------------------------

    def _get_env_publish_root(self) -> Optional[str]:
        for key in self.ENV_KEYS:
            val = os.getenv(key)
            if val:
                return val
        return None

    # ------------------------------------------------------------------
    # Atomic writer
    # ------------------------------------------------------------------

    def _write_atomic(self, path: Path, payload: Any) -> None:
        serialized = json.dumps(payload, indent=2)
        path.parent.mkdir(parents=True, exist_ok=True)

        with tempfile.NamedTemporaryFile(
            "w", dir=path.parent, delete=False, encoding="utf-8"
        ) as tmp:
            tmp.write(serialized)
            tmp.flush()
            os.fsync(tmp.fileno())
            temp_path = Path(tmp.name)

        temp_path.replace(path)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    @property
    def publish_root(self) -> Optional[Path]:
        return self._publish_root

    def publish(self, relative_path: Path | str, payload: Any) -> None:
        """
        Write snapshot to <base_dir>/<relative_path> and optionally
        mirror to <publish_root>/<relative_path>.
        """
        rel = Path(relative_path)
        target = self._base_dir / rel

        try:
            self._write_atomic(target, payload)
        except Exception as e:
            log.error(f"Failed to write state snapshot {rel}: {e}")
            return

        if not self._publish_root:
            return

        mirror = self._publish_root / rel
        try:
            self._write_atomic(mirror, payload)
        except Exception as e:
            log.warning(f"Failed to mirror snapshot to publish root: {e}")
