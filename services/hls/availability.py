from __future__ import annotations

from typing import Optional

import httpx

from shared.logging.logger import get_logger

log = get_logger("services.hls.availability")

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "*/*",
}


async def is_available(
    url: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = 10.0,
) -> bool:
    """
    Report whether the upstream playlist answers with a 2xx.

    Unavailability is the normal state of an offline stream, so every
    failure mode (non-2xx, timeout, transport error) maps to False.
    """
    try:
        if client is not None:
            resp = await client.get(url, headers=BROWSER_HEADERS, timeout=timeout)
        else:
            async with httpx.AsyncClient(
                timeout=timeout, headers=BROWSER_HEADERS, follow_redirects=True
            ) as own_client:
                resp = await own_client.get(url)
    except Exception as e:
        log.debug(f"Availability probe failed for {url}: {e!r}")
        return False

    if not resp.is_success:
        log.debug(f"Availability probe for {url} returned {resp.status_code}")
        return False
    return True
