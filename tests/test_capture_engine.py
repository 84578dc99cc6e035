import asyncio

import pytest

from services.capture.engine import CaptureEngine, CaptureError, is_segment_ready
from services.capture.events import (
    CaptureEnded,
    CaptureProgress,
    CaptureStarted,
    SegmentProbed,
    SegmentReady,
)
from tests.fakes import FakeProbe, FakeProber, FakeProcess, FakeTranscoder


def _engine(tmp_path, settings, transcoder, probe, prober, chunk=60):
    return CaptureEngine(
        "alpha",
        "https://example.com/low.m3u8",
        chunk,
        tmp_path / "work" / "alpha",
        settings,
        transcoder=transcoder,
        probe=probe,
        is_available=prober,
        availability_url="https://example.com/master.m3u8",
        process_stop_timeout=1.0,
    )


async def _collect(engine):
    return [event async for event in engine.events()]


# ------------------------------------------------------------
# Readiness rule
# ------------------------------------------------------------

def test_segment_short_of_target_is_not_ready():
    assert is_segment_ready(59.0, 60.0, eol_at=None, now=100.0, confirm_seconds=60, tolerance=0.5) is False
    assert is_segment_ready(59.6, 60.0, eol_at=None, now=100.0, confirm_seconds=60, tolerance=0.5) is True
    assert is_segment_ready(60.0, 60.0, eol_at=None, now=100.0, confirm_seconds=60) is True


def test_segment_ready_once_end_of_life_confirmed():
    assert is_segment_ready(10.0, 60.0, eol_at=50.0, now=100.0, confirm_seconds=60) is False
    assert is_segment_ready(10.0, 60.0, eol_at=40.0, now=100.0, confirm_seconds=60) is True


# ------------------------------------------------------------
# Capture lifecycle
# ------------------------------------------------------------

def test_clean_end_hands_off_segments_in_order(tmp_path, capture_settings):
    process = FakeProcess(finish_after=0.1)
    transcoder = FakeTranscoder(
        {"segment-00000.mp4": b"first", "segment-00001.mp4": b"second"},
        process,
    )
    probe = FakeProbe({"segment-00000.mp4": 60.0, "segment-00001.mp4": 12.0})
    prober = FakeProber(available=True)
    engine = _engine(tmp_path, capture_settings, transcoder, probe, prober)

    events = asyncio.run(_collect(engine))

    assert isinstance(events[0], CaptureStarted)
    assert any(isinstance(e, CaptureProgress) for e in events)

    ready = [e for e in events if isinstance(e, SegmentReady)]
    assert [(e.index, e.name, e.data) for e in ready] == [
        (0, "segment-00000.mp4", b"first"),
        (1, "segment-00001.mp4", b"second"),
    ]

    ended = [e for e in events if isinstance(e, CaptureEnded)]
    assert len(ended) == 1
    assert events[-1] is ended[0]
    assert ended[0].reason == "end"
    assert ended[0].faulted is False
    assert ended[0].remaining == []
    assert not engine.work_dir.exists()
    assert transcoder.started_with[0][0] == "https://example.com/low.m3u8"


def test_probe_failures_are_reported_and_retried(tmp_path, capture_settings):
    process = FakeProcess(finish_after=0.1)
    transcoder = FakeTranscoder({"segment-00000.mp4": b"data"}, process)
    probe = FakeProbe({})

    async def run():
        engine = _engine(tmp_path, capture_settings, transcoder, probe, FakeProber())
        collected = []
        async for event in engine.events():
            collected.append(event)
            probed = [e for e in collected if isinstance(e, SegmentProbed)]
            if len(probed) == 2:
                probe.durations["segment-00000.mp4"] = 60.0
        return collected

    events = asyncio.run(run())

    failed = [e for e in events if isinstance(e, SegmentProbed) and e.duration is None]
    assert len(failed) >= 2
    assert failed[0].describe() == "segment-00000.mp4 not yet readable"
    assert [e.name for e in events if isinstance(e, SegmentReady)] == ["segment-00000.mp4"]


def test_unavailable_source_marks_end_of_life_once_per_cycle(tmp_path, capture_settings):
    capture_settings.eol_confirm_seconds = 30.0
    probe = FakeProbe({"segment-00000.mp4": 10.0, "segment-00001.mp4": 20.0})
    prober = FakeProber(available=False)

    async def run():
        engine = _engine(tmp_path, capture_settings, FakeTranscoder({}, FakeProcess()), probe, prober)
        engine.work_dir.mkdir(parents=True)
        (engine.work_dir / "segment-00000.mp4").write_bytes(b"a")
        (engine.work_dir / "segment-00001.mp4").write_bytes(b"b")

        emitted = []

        async def emit(event):
            emitted.append(event)

        await engine._poll_once(emit)
        return engine, emitted

    engine, emitted = asyncio.run(run())

    assert len(prober.calls) == 1
    assert prober.calls[0] == "https://example.com/master.m3u8"
    assert engine.end_of_life_at is not None

    probed = [e for e in emitted if isinstance(e, SegmentProbed)]
    assert [(e.name, e.ready) for e in probed] == [
        ("segment-00000.mp4", True),
        ("segment-00001.mp4", False),
    ]
    assert probed[1].describe() == "segment-00001.mp4 20/60s"
    assert [e.name for e in emitted if isinstance(e, SegmentReady)] == ["segment-00000.mp4"]
    assert not (engine.work_dir / "segment-00000.mp4").exists()


def test_failsafe_ends_never_ending_capture_exactly_once(tmp_path, capture_settings):
    capture_settings.failsafe_timeout_seconds = 0.05
    capture_settings.failsafe_grace_seconds = 0.05
    capture_settings.drain_ceiling_seconds = 0.3
    process = FakeProcess()
    transcoder = FakeTranscoder({"segment-00000.mp4": b"partial"}, process)
    engine = _engine(tmp_path, capture_settings, transcoder, FakeProbe({}), FakeProber())

    events = asyncio.run(asyncio.wait_for(_collect(engine), timeout=10))

    ended = [e for e in events if isinstance(e, CaptureEnded)]
    assert len(ended) == 1
    assert ended[0].reason == "failsafe"
    assert ended[0].faulted is False
    assert ended[0].remaining == ["segment-00000.mp4"]
    assert process.terminated is True
    assert engine.end_of_life_at is not None
    assert not engine.work_dir.exists()


def test_failsafe_stops_transcoder_and_hands_off_short_segment(tmp_path, capture_settings):
    capture_settings.failsafe_timeout_seconds = 0.1
    capture_settings.failsafe_grace_seconds = 0.02
    capture_settings.eol_confirm_seconds = 0.05
    process = FakeProcess()
    transcoder = FakeTranscoder({"segment-00000.mp4": b"partial"}, process)
    probe = FakeProbe({"segment-00000.mp4": 12.0})
    engine = _engine(tmp_path, capture_settings, transcoder, probe, FakeProber(available=True), chunk=60)

    events = asyncio.run(asyncio.wait_for(_collect(engine), timeout=10))

    ready = [e for e in events if isinstance(e, SegmentReady)]
    assert [(e.name, e.data) for e in ready] == [("segment-00000.mp4", b"partial")]

    ended = events[-1]
    assert isinstance(ended, CaptureEnded)
    assert ended.reason == "failsafe"
    assert ended.faulted is False
    assert ended.remaining == []
    assert process.terminated is True
    assert not engine.work_dir.exists()


def test_transcoder_error_is_reported_on_capture_end(tmp_path, capture_settings):
    process = FakeProcess(finish_after=0.05, exit_error="ffmpeg exited with code 1: boom")
    transcoder = FakeTranscoder({}, process)
    engine = _engine(tmp_path, capture_settings, transcoder, FakeProbe({}), FakeProber())

    events = asyncio.run(_collect(engine))

    ended = events[-1]
    assert isinstance(ended, CaptureEnded)
    assert ended.faulted is True
    assert "boom" in ended.error


def test_transcoder_start_failure_raises_capture_error(tmp_path, capture_settings):
    transcoder = FakeTranscoder({}, FakeProcess(), fail=OSError("ffmpeg not found"))
    engine = _engine(tmp_path, capture_settings, transcoder, FakeProbe({}), FakeProber())

    with pytest.raises(CaptureError):
        asyncio.run(_collect(engine))
    assert not engine.work_dir.exists()


def test_stale_work_dir_is_cleared(tmp_path, capture_settings):
    process = FakeProcess(finish_after=0.05)
    transcoder = FakeTranscoder({}, process)
    engine = _engine(tmp_path, capture_settings, transcoder, FakeProbe({}), FakeProber())
    engine.work_dir.mkdir(parents=True)
    (engine.work_dir / "segment-00099.mp4").write_bytes(b"stale")

    events = asyncio.run(_collect(engine))

    assert not [e for e in events if isinstance(e, SegmentReady)]
    assert events[-1].remaining == []
