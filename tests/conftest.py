import os

# Must be set before any project module creates its logger
os.environ.setdefault("RECORDER_LOG_TO_FILE", "0")

import pytest

from shared.config.recorder import CaptureSettings, SchedulerSettings


@pytest.fixture
def capture_settings(tmp_path):
    return CaptureSettings(
        work_root=str(tmp_path / "work"),
        readiness_poll_seconds=0.01,
        eol_confirm_seconds=0.05,
        drain_poll_seconds=0.01,
        drain_ceiling_seconds=2.0,
        failsafe_timeout_seconds=30.0,
        failsafe_grace_seconds=0.01,
        duration_tolerance_seconds=0.5,
        progress_interval_seconds=0.0,
    )


@pytest.fixture
def scheduler_settings(tmp_path):
    return SchedulerSettings(
        check_interval_seconds=3600.0,
        retry_delay_seconds=0.01,
        ping_interval_seconds=3600.0,
        output_base_dir=str(tmp_path / "recordings"),
    )
