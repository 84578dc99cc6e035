"""
HLS variant selection.

Given a master playlist URL, pick the media playlist the recorder should
capture. Selection is advisory: whenever the manifest cannot be fetched or
understood, the original URL is returned so recording can still start.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Union
from urllib.parse import urljoin

import httpx
import m3u8

from shared.logging.logger import get_logger

log = get_logger("services.hls.quality")

MANIFEST_HEADERS = {
    "User-Agent": "Mozilla/5.0",
    "Accept": "application/vnd.apple.mpegurl, application/x-mpegurl, */*",
}


@dataclass(frozen=True)
class Variant:
    bandwidth: int
    url: str


def parse_variants(manifest_text: str, base_url: str) -> List[Variant]:
    """
    Parse the variant entries of a master playlist.

    Returns an empty list for media playlists. Raises ValueError when the
    text is not an M3U8 document.
    """
    if not manifest_text.lstrip().startswith("#EXTM3U"):
        raise ValueError("Response is not an M3U8 playlist")

    playlist = m3u8.loads(manifest_text)
    if not playlist.is_variant:
        return []

    variants: List[Variant] = []
    for entry in playlist.playlists:
        info = entry.stream_info
        if not info or info.bandwidth is None or not entry.uri:
            continue
        variants.append(Variant(bandwidth=int(info.bandwidth), url=urljoin(base_url, entry.uri)))
    return variants


def choose_variant(variants: List[Variant], preference: Union[str, int]) -> Variant:
    """
    Pick a variant by policy.

    ``lowest``/``highest`` take the extreme bandwidth; a number picks the
    variant with the smallest absolute bandwidth distance, ties going to the
    first entry of the ascending list.
    """
    if not variants:
        raise ValueError("No variants to choose from")

    ordered = sorted(variants, key=lambda v: v.bandwidth)

    if isinstance(preference, str) and preference.strip().isdigit():
        preference = int(preference.strip())

    if preference == "highest":
        return ordered[-1]
    if isinstance(preference, int) and not isinstance(preference, bool):
        return min(ordered, key=lambda v: abs(v.bandwidth - preference))
    return ordered[0]


async def select_variant(
    name: str,
    master_url: str,
    preference: Union[str, int] = "lowest",
    *,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = 10.0,
) -> str:
    try:
        if client is not None:
            resp = await client.get(master_url, headers=MANIFEST_HEADERS, timeout=timeout)
        else:
            async with httpx.AsyncClient(
                timeout=timeout, headers=MANIFEST_HEADERS, follow_redirects=True
            ) as own_client:
                resp = await own_client.get(master_url)
        resp.raise_for_status()

        variants = parse_variants(resp.text, str(resp.url))
        if not variants:
            log.info(f"[{name}] No quality variants found, using original URL")
            return master_url

        selected = choose_variant(variants, preference)
        log.info(
            f"[{name}] Selected {preference} quality: {selected.bandwidth / 1000:.0f}kbps "
            f"({len(variants)} variant(s) available)"
        )
        return selected.url

    except httpx.HTTPStatusError as e:
        log.warning(
            f"[{name}] Master playlist fetch failed: "
            f"{e.response.status_code} {e.response.reason_phrase}; falling back to original URL"
        )
        return master_url

    except Exception as e:
        log.warning(f"[{name}] Error parsing master playlist ({e}); falling back to original URL")
        return master_url
