from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import psutil

from shared.logging.logger import get_logger

log = get_logger("services.system.usage")


@dataclass
class SystemUsage:
    cpu_percent: float
    memory_total_mb: int
    memory_used_mb: int
    memory_free_mb: int
    memory_percent: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def sample_usage() -> SystemUsage:
    mem = psutil.virtual_memory()
    return SystemUsage(
        # non-blocking: percentage since the previous call
        cpu_percent=psutil.cpu_percent(interval=None),
        memory_total_mb=mem.total // (1024 * 1024),
        memory_used_mb=mem.used // (1024 * 1024),
        memory_free_mb=mem.available // (1024 * 1024),
        memory_percent=mem.percent,
    )


def log_usage() -> Optional[SystemUsage]:
    try:
        usage = sample_usage()
    except Exception as e:
        log.warning(f"Error sampling system usage: {e}")
        return None

    log.info(f"System Status - CPU: {usage.cpu_percent:.1f}%, Memory Used: {usage.memory_percent:.1f}%")
    return usage
