"""
======================================================================
 HLS Recorder Runtime - Version v0.1.0 (Build 2026.10)
======================================================================
"""

from __future__ import annotations

"""
Configuration validation script.

Loads the recorder configuration exactly as the runtime would (.env, the
optional RECORDER_CONFIG_PATH document, environment overrides) and prints a
summary.

Usage:
    python -m scripts.validate_config

Design rules:
- No side effects on import
- No runtime startup
- Validation only (no mutation)
"""


import sys
from typing import List

from dotenv import load_dotenv

from shared.config.recorder import RecorderConfig, load_recorder_config


def _error(msg: str):
    print(f"[CONFIG ERROR] {msg}", file=sys.stderr)


# ------------------------------------------------------------
# Validators
# ------------------------------------------------------------

def validate(config: RecorderConfig) -> List[str]:
    problems: List[str] = []

    if not config.streams:
        problems.append("no streams configured (set STREAM_DATA or 'streams' in the config file)")

    uploading = [s.name for s in config.streams if s.upload_enabled]
    if uploading and not config.aws.enabled:
        problems.append(
            f"upload enabled for {', '.join(uploading)} but AWS_S3_BUCKET is not set; "
            "chunks will only be kept locally"
        )

    return problems


def summarize(config: RecorderConfig) -> None:
    print(f"Streams ({len(config.streams)}):")
    for stream in config.streams:
        print(
            f"  - {stream.name}: {stream.url} "
            f"(chunk={stream.chunk_duration}s, quality={stream.quality}, "
            f"upload={'on' if stream.upload_enabled else 'off'})"
        )
    print(f"Check interval: {config.scheduler.check_interval_seconds:g}s")
    print(f"Failsafe timeout: {config.capture.failsafe_timeout_seconds:g}s")
    print(f"Recordings dir: {config.scheduler.output_base_dir}")
    print(f"S3 bucket: {config.aws.bucket or '(disabled)'}")
    print(f"Webhook: {config.webhook.url or '(disabled)'}")
    print(f"Status API: {'on' if config.status_api.enabled else 'off'} port {config.status_api.port}")


# ------------------------------------------------------------
# Entry point
# ------------------------------------------------------------

def main() -> int:
    load_dotenv()
    config = load_recorder_config()
    summarize(config)

    problems = validate(config)
    for problem in problems:
        _error(problem)

    if not config.streams:
        print("Configuration validation failed.", file=sys.stderr)
        return 1

    print("Configuration validation passed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
