"""
Outbound event notifications.

Every lifecycle event is POSTed as ``{type, payload, time, server}``. Delivery
is best-effort: failures are logged and returned, never raised, and recording
never waits on an endpoint longer than the configured timeout.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

import httpx

from shared.config.recorder import WebhookConfig
from shared.logging.logger import get_logger

log = get_logger("services.webhooks.notifier")

STREAM_START = "streamStart"
STREAM_END = "streamEnd"
CHUNK_UPLOAD = "chunkUpload"
COMPLETE_UPLOAD = "completeUpload"


@dataclass
class NotifyResult:
    ok: bool
    skipped: bool = False
    status_code: Optional[int] = None
    error: Optional[str] = None


class WebhookNotifier:
    def __init__(
        self,
        config: WebhookConfig,
        server_tag: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._config = config
        self._server_tag = server_tag
        self._client = client
        self._pending: Set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self._config.url)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._config.secret:
            headers["Authorization"] = f"Bearer {self._config.secret}"
        return headers

    def build_body(self, event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "type": event_type,
            "payload": payload,
            "time": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "server": self._server_tag,
        }

    async def send(self, event_type: str, payload: Dict[str, Any]) -> NotifyResult:
        if not self.enabled:
            log.debug(f"Webhook URL not configured; skipping {event_type}")
            return NotifyResult(ok=False, skipped=True)

        body = self.build_body(event_type, payload)
        timeout = self._config.timeout_seconds

        try:
            if self._client is not None:
                resp = await self._client.post(
                    self._config.url, json=body, headers=self._headers(), timeout=timeout
                )
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    resp = await client.post(self._config.url, json=body, headers=self._headers())
        except Exception as e:
            log.warning(f"Webhook {event_type} failed: {e}")
            return NotifyResult(ok=False, error=str(e))

        if not resp.is_success:
            log.warning(f"Webhook {event_type} rejected: HTTP {resp.status_code}")
            return NotifyResult(ok=False, status_code=resp.status_code, error=f"HTTP {resp.status_code}")

        log.debug(f"Webhook {event_type} delivered ({resp.status_code})")
        return NotifyResult(ok=True, status_code=resp.status_code)

    def fire(self, event_type: str, payload: Dict[str, Any]) -> Optional[asyncio.Task]:
        """Schedule a send without waiting for it."""
        if not self.enabled:
            return None
        task = asyncio.create_task(self.send(event_type, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self, timeout: Optional[float] = None) -> None:
        if not self._pending:
            return
        pending = list(self._pending)
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            log.warning(f"Abandoned {len(not_done)} webhook delivery(ies) at shutdown")
            await asyncio.gather(*not_done, return_exceptions=True)
