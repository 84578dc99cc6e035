from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from services.capture.ffmpeg import resolve_binary
from shared.logging.logger import get_logger

log = get_logger("services.recording.assembler")

MANIFEST_NAME = "concat.txt"


@dataclass
class AssemblyResult:
    ok: bool
    output_path: Optional[Path] = None
    size_bytes: int = 0
    segments: int = 0
    error: Optional[str] = None


def _concat_line(path: Path) -> str:
    # concat demuxer quoting: close the quote, escape, reopen
    escaped = str(path.resolve()).replace("'", "'\\''")
    return f"file '{escaped}'"


class SegmentAssembler:
    def __init__(self, ffmpeg_path: str = "ffmpeg"):
        self._ffmpeg_path = ffmpeg_path

    @property
    def ffmpeg_path(self) -> str:
        return resolve_binary(self._ffmpeg_path, "ffmpeg")

    def build_command(self, manifest_path: Path, output_path: Path) -> List[str]:
        return [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-loglevel",
            "error",
            "-f",
            "concat",
            "-safe",
            "0",
            "-i",
            str(manifest_path),
            "-c:v",
            "copy",
            "-c:a",
            "copy",
            "-movflags",
            "+faststart",
            str(output_path),
        ]

    async def assemble(
        self,
        ordered_paths: Sequence[Path | str],
        output_dir: Path | str,
        final_name: str = "complete.mp4",
        *,
        label: str = "assembly",
    ) -> AssemblyResult:
        """
        Losslessly concatenate segments, in the given order, into one file.

        Tool failures come back as ``AssemblyResult(ok=False)``; the manifest
        is removed on every path.
        """
        segments = [Path(p) for p in ordered_paths]
        output_dir = Path(output_dir)
        output_path = output_dir / final_name

        if not segments:
            log.warning(f"[{label}] No segments to assemble")
            return AssemblyResult(ok=False, error="no segments")

        if output_path.exists():
            output_path.unlink()

        manifest_path = output_dir / MANIFEST_NAME
        manifest_path.write_text(
            "\n".join(_concat_line(p) for p in segments) + "\n",
            encoding="utf-8",
        )

        cmd = self.build_command(manifest_path, output_path)
        log.info(f"[{label}] ffmpeg concat starting ({len(segments)} segment(s)): {' '.join(cmd)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await process.communicate()
        except OSError as e:
            log.error(f"[{label}] ffmpeg concat could not start: {e}")
            return AssemblyResult(ok=False, segments=len(segments), error=str(e))
        finally:
            self._remove_manifest(manifest_path, label)

        if process.returncode != 0:
            stderr_text = stderr.decode("utf-8", errors="ignore").strip()
            log.error(
                f"[{label}] ffmpeg concat failed (code={process.returncode}) stderr={stderr_text}"
            )
            return AssemblyResult(
                ok=False,
                segments=len(segments),
                error=f"ffmpeg exited with code {process.returncode}: {stderr_text}",
            )

        if not output_path.exists():
            log.error(f"[{label}] ffmpeg concat reported success but {output_path} is missing")
            return AssemblyResult(ok=False, segments=len(segments), error="output not produced")

        size = output_path.stat().st_size
        log.info(f"[{label}] {final_name}: Processing finished ({size} bytes)")
        return AssemblyResult(ok=True, output_path=output_path, size_bytes=size, segments=len(segments))

    @staticmethod
    def _remove_manifest(manifest_path: Path, label: str) -> None:
        try:
            manifest_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning(f"[{label}] Failed to remove concat manifest: {e}")
