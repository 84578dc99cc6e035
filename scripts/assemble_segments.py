"""
======================================================================
 HLS Recorder Runtime - Version v0.1.0 (Build 2026.10)
======================================================================
"""

from __future__ import annotations

"""
Re-run final assembly on a session directory left behind by a failed
finalization.

Usage:
    python -m scripts.assemble_segments recordings/<stream>/<timestamp>
    python -m scripts.assemble_segments <dir> --name complete.mp4 --keep-chunks
"""


import argparse
import asyncio
import os
import sys
from pathlib import Path

from core.session import list_chunks
from services.recording.assembler import SegmentAssembler


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Assemble recorded chunks into one file")
    parser.add_argument("directory", type=Path, help="Session directory holding chunk-*.mp4 files")
    parser.add_argument(
        "--name",
        default="complete.mp4",
        help="Output file name inside the directory (default: complete.mp4)",
    )
    parser.add_argument(
        "--ffmpeg",
        default=os.getenv("FFMPEG_PATH", "ffmpeg"),
        help="ffmpeg binary (default: $FFMPEG_PATH or ffmpeg)",
    )
    parser.add_argument(
        "--keep-chunks",
        action="store_true",
        help="Leave the chunk files in place after a successful assembly",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()

    if not args.directory.is_dir():
        print(f"Not a directory: {args.directory}", file=sys.stderr)
        return 1

    chunks = list_chunks(args.directory)
    if not chunks:
        print(f"No chunk files in {args.directory}", file=sys.stderr)
        return 1

    print(f"Assembling {len(chunks)} chunk(s) into {args.directory / args.name}")
    assembler = SegmentAssembler(args.ffmpeg)
    result = asyncio.run(assembler.assemble(chunks, args.directory, args.name, label="manual"))

    if not result.ok:
        print(f"Assembly failed: {result.error}", file=sys.stderr)
        return 1

    if not args.keep_chunks:
        for chunk in chunks:
            chunk.unlink()

    print(f"Wrote {result.output_path} ({result.size_bytes} bytes)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
