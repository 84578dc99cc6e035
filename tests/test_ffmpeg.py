import asyncio
import sys

import pytest

from services.capture.ffmpeg import FFmpegSegmenter, FFprobe, resolve_binary

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX shell scripts")


def _script(tmp_path, name, body):
    path = tmp_path / name
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(0o755)
    return path


def test_build_command_segments_at_chunk_boundaries():
    cmd = FFmpegSegmenter("ffmpeg").build_command("https://example.com/live.m3u8", 60, "/tmp/w/segment-%05d.mp4")

    assert cmd[0] == "ffmpeg"
    assert cmd[cmd.index("-i") + 1] == "https://example.com/live.m3u8"
    assert cmd[cmd.index("-segment_time") + 1] == "60"
    assert cmd[cmd.index("-force_key_frames") + 1] == "expr:gte(t,n_forced*60)"
    assert cmd[cmd.index("-progress") + 1] == "pipe:1"
    assert cmd[cmd.index("-segment_format") + 1] == "mp4"
    assert cmd[-1] == "/tmp/w/segment-%05d.mp4"


def test_resolve_binary_falls_back_when_path_missing(tmp_path):
    assert resolve_binary("ffmpeg", "ffmpeg") == "ffmpeg"
    assert resolve_binary(str(tmp_path / "nope" / "ffmpeg"), "ffmpeg") == "ffmpeg"
    existing = _script(tmp_path, "ffmpeg", "exit 0\n")
    assert resolve_binary(str(existing), "ffmpeg") == str(existing)


def test_transcode_process_reports_progress_and_end(tmp_path):
    ffmpeg = _script(
        tmp_path,
        "ffmpeg",
        "echo 'fps=25.00'\n"
        "echo 'bitrate=1200.0kbits/s'\n"
        "echo 'out_time=00:00:05.123456'\n"
        "echo 'progress=continue'\n"
        "echo 'out_time=00:00:10.500000'\n"
        "echo 'progress=end'\n"
        "exit 0\n",
    )

    async def run():
        process = await FFmpegSegmenter(str(ffmpeg)).start("in.m3u8", 10, str(tmp_path / "seg-%05d.mp4"))
        return [event async for event in process.events()]

    events = asyncio.run(run())

    assert [e.kind for e in events] == ["start", "progress", "progress", "end"]
    assert events[1].timemark == "00:00:05.12"
    assert events[1].fps == 25.0
    assert events[1].throughput == "1200.0kbits/s"
    assert events[2].timemark == "00:00:10.50"


def test_transcode_process_reports_error_with_stderr_tail(tmp_path):
    ffmpeg = _script(tmp_path, "ffmpeg", "echo 'Server returned 404 Not Found' >&2\nexit 1\n")

    async def run():
        process = await FFmpegSegmenter(str(ffmpeg)).start("in.m3u8", 10, str(tmp_path / "seg-%05d.mp4"))
        return [event async for event in process.events()]

    events = asyncio.run(run())

    assert events[-1].kind == "error"
    assert "code 1" in events[-1].message
    assert "404 Not Found" in events[-1].message


def test_ffprobe_duration(tmp_path):
    ok = _script(tmp_path, "ffprobe", "echo '59.960000'\n")
    broken = _script(tmp_path, "ffprobe-broken", "echo 'moov atom not found' >&2\nexit 1\n")

    assert asyncio.run(FFprobe(str(ok)).probe_duration(tmp_path / "x.mp4")) == pytest.approx(59.96)
    assert asyncio.run(FFprobe(str(broken)).probe_duration(tmp_path / "x.mp4")) is None


def test_ffprobe_timeout_returns_none(tmp_path):
    slow = _script(tmp_path, "ffprobe", "exec sleep 5\n")
    assert asyncio.run(FFprobe(str(slow), timeout=0.1).probe_duration(tmp_path / "x.mp4")) is None
