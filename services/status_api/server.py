"""Read-only HTTP surface over the live-state store."""

from __future__ import annotations

import json
import threading
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from runtime import version
from shared.config.recorder import StatusApiConfig
from shared.logging.logger import get_logger
from shared.storage.state_store import LiveStateStore

log = get_logger("services.status_api")


class StatusApiServer:
    def __init__(self, config: StatusApiConfig, store: LiveStateStore) -> None:
        self._config = config
        self._store = store
        self._thread: Optional[threading.Thread] = None
        self._server: Optional[ThreadingHTTPServer] = None

    @property
    def address(self) -> Optional[tuple]:
        return self._server.server_address if self._server else None

    def start(self) -> None:
        if not self._config.enabled:
            log.info("Status API server disabled via config")
            return
        if self._thread and self._thread.is_alive():
            return

        handler = self._build_handler()
        self._server = ThreadingHTTPServer(
            (self._config.host, int(self._config.port)),
            handler,
        )
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        log.info(
            "Status API server running on %s:%s",
            self._config.host,
            self._server.server_address[1],
        )

    def stop(self) -> None:
        if not self._server:
            return
        self._server.shutdown()
        self._server.server_close()
        self._server = None
        log.info("Status API server stopped")

    def _build_handler(self):
        store = self._store

        class Handler(BaseHTTPRequestHandler):
            def _send_json(self, status: int, payload: Dict[str, Any]) -> None:
                body = json.dumps(payload).encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.send_header("Access-Control-Allow-Origin", "*")
                self.end_headers()
                self.wfile.write(body)

            def do_GET(self) -> None:  # noqa: N802 - stdlib signature
                path = urlparse(self.path).path.rstrip("/") or "/"

                if path == "/state":
                    return self._send_json(HTTPStatus.OK, store.live_state_document())

                if path == "/artifacts":
                    return self._send_json(HTTPStatus.OK, store.global_state())

                if path == "/health":
                    return self._send_json(
                        HTTPStatus.OK,
                        {
                            "status": "ok",
                            "streams": store.stream_names(),
                            **version.as_dict(),
                        },
                    )

                self._send_json(HTTPStatus.NOT_FOUND, {"error": "Unknown endpoint"})

            def log_message(self, format: str, *args: Any) -> None:
                log.debug("%s - %s", self.address_string(), format % args)

        return Handler


__all__ = ["StatusApiServer"]
