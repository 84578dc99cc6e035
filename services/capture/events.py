"""
Typed events emitted by the capture engine.

A session consumes these from CaptureEngine.events() in emission order.
CaptureEnded is always the final event of a capture.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Union


@dataclass(frozen=True)
class CaptureStarted:
    command: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class CaptureProgress:
    timemark: str
    fps: Optional[float] = None
    throughput: Optional[str] = None

    def describe(self) -> str:
        parts = [self.timemark]
        if self.fps is not None:
            parts.append(f"@ {self.fps:g}fps")
        if self.throughput:
            parts.append(self.throughput)
        return " ".join(parts)


@dataclass(frozen=True)
class SegmentProbed:
    name: str
    duration: Optional[float]
    target: float
    ready: bool = False

    def describe(self) -> str:
        if self.duration is None:
            return f"{self.name} not yet readable"
        return f"{self.name} {int(self.duration)}/{int(self.target)}s"


@dataclass(frozen=True)
class SegmentReady:
    index: int
    name: str
    data: bytes = field(repr=False)
    duration: Optional[float] = None


@dataclass(frozen=True)
class CaptureEnded:
    remaining: List[str] = field(default_factory=list)
    reason: str = "end"
    error: Optional[str] = None

    @property
    def faulted(self) -> bool:
        return self.reason == "error"


CaptureEvent = Union[CaptureStarted, CaptureProgress, SegmentProbed, SegmentReady, CaptureEnded]
