from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from shared.logging.logger import get_logger

log = get_logger("shared.config.recorder")

CONFIG_PATH_ENV = "RECORDER_CONFIG_PATH"

QualityPreference = Union[str, int]

UPLOAD_FAILURE_POLICIES = ("keep", "purge")


@dataclass(frozen=True)
class StreamConfig:
    name: str
    url: str
    upload_enabled: bool = False
    chunk_duration: int = 300
    quality: QualityPreference = "lowest"


@dataclass
class CaptureSettings:
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    work_root: str = field(
        default_factory=lambda: str(Path(tempfile.gettempdir()) / "hls-recorder")
    )
    segment_pattern: str = "segment-%05d.mp4"
    readiness_poll_seconds: float = 30.0
    eol_confirm_seconds: float = 60.0
    drain_poll_seconds: float = 5.0
    drain_ceiling_seconds: float = 120.0
    failsafe_timeout_seconds: float = 8 * 60 * 60
    failsafe_grace_seconds: float = 15.0
    # a probed duration this far short of the chunk target still counts as full
    duration_tolerance_seconds: float = 0.5
    progress_interval_seconds: float = 5.0
    probe_timeout_seconds: float = 30.0


@dataclass
class SchedulerSettings:
    check_interval_seconds: float = 5 * 60
    retry_delay_seconds: float = 30.0
    ping_interval_seconds: float = 15 * 60
    ping_history_size: int = 96
    file_log_size: int = 10
    usage_interval_seconds: float = 60.0
    output_base_dir: str = "recordings"
    final_name: str = "complete.mp4"
    shutdown_grace_seconds: float = 600.0


@dataclass
class AwsConfig:
    access_key: str = ""
    secret_access_key: str = ""
    region: str = ""
    bucket: str = ""
    save_path: str = "stream_backup"
    presign_expiry_seconds: int = 60 * 60 * 24 * 7

    @property
    def enabled(self) -> bool:
        return bool(self.bucket)


@dataclass
class WebhookConfig:
    url: str = ""
    secret: str = ""
    timeout_seconds: float = 5.0


@dataclass
class StatusApiConfig:
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 3000


@dataclass
class RecorderConfig:
    streams: List[StreamConfig] = field(default_factory=list)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    capture: CaptureSettings = field(default_factory=CaptureSettings)
    aws: AwsConfig = field(default_factory=AwsConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    status_api: StatusApiConfig = field(default_factory=StatusApiConfig)
    server_tag: str = "local"
    default_chunk_duration: int = 300
    upload_failure_policy: str = "keep"


# ----------------------------------------------------------------------
# Value helpers
# ----------------------------------------------------------------------

def _as_float(value: Any, default: float, key: str, *, allow_zero: bool = False) -> float:
    if value is None or value == "":
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        log.warning(f"{key} must be numeric (got {value!r}); using {default}")
        return default
    if parsed < 0 or (parsed == 0 and not allow_zero):
        log.warning(f"{key} must be positive (got {value!r}); using {default}")
        return default
    return parsed


def _as_int(value: Any, default: int, key: str) -> int:
    return int(_as_float(value, default, key))


def _as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    return default


def parse_quality(value: Any) -> QualityPreference:
    if value is None:
        return "lowest"
    if isinstance(value, bool):
        return "lowest"
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip().lower()
    if text in {"lowest", "highest"}:
        return text
    if text.isdigit():
        return int(text)
    log.warning(f"Unknown quality preference {value!r}; using lowest")
    return "lowest"


def _load_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        log.warning(f"Recorder config not found at {path}; using environment only")
        return {}

    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
            return data if isinstance(data, dict) else {}
    except Exception as e:
        log.warning(f"Failed to load recorder config ({e}); using environment only")
        return {}


# ----------------------------------------------------------------------
# Section loaders
# ----------------------------------------------------------------------

def _load_streams(
    raw: Any,
    *,
    default_chunk_duration: int,
    default_upload: bool,
) -> List[StreamConfig]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw) if raw.strip() else []
        except json.JSONDecodeError as e:
            log.warning(f"STREAM_DATA is not valid JSON ({e}); no streams loaded")
            return []

    if not isinstance(raw, list):
        if raw:
            log.warning("Stream list must be a JSON array; no streams loaded")
        return []

    streams: List[StreamConfig] = []
    seen = set()
    for entry in raw:
        if not isinstance(entry, dict):
            log.warning(f"Ignoring stream entry that is not an object: {entry!r}")
            continue

        name = str(entry.get("name") or "").strip()
        url = str(entry.get("url") or "").strip()
        if not name or not url:
            log.warning(f"Ignoring stream entry without name/url: {entry!r}")
            continue
        if name in seen:
            log.warning(f"[{name}] Duplicate stream name; keeping the first entry")
            continue
        seen.add(name)

        upload = entry.get("uploadToS3", entry.get("upload_enabled"))
        chunk = entry.get("chunkDuration", entry.get("chunk_duration"))

        streams.append(
            StreamConfig(
                name=name,
                url=url,
                upload_enabled=_as_bool(upload, default_upload),
                chunk_duration=_as_int(chunk, default_chunk_duration, f"{name}.chunkDuration"),
                quality=parse_quality(entry.get("quality")),
            )
        )

    return streams


def _load_capture(raw: Dict[str, Any], env: Mapping[str, str]) -> CaptureSettings:
    defaults = CaptureSettings()
    failsafe = env.get("STREAM_FAILSAFE_TIMEOUT_S", raw.get("failsafe_timeout_seconds"))

    return CaptureSettings(
        ffmpeg_path=str(env.get("FFMPEG_PATH") or raw.get("ffmpeg_path") or defaults.ffmpeg_path),
        ffprobe_path=str(env.get("FFPROBE_PATH") or raw.get("ffprobe_path") or defaults.ffprobe_path),
        work_root=str(env.get("RECORDER_WORK_ROOT") or raw.get("work_root") or defaults.work_root),
        segment_pattern=str(raw.get("segment_pattern") or defaults.segment_pattern),
        readiness_poll_seconds=_as_float(
            raw.get("readiness_poll_seconds"), defaults.readiness_poll_seconds, "readiness_poll_seconds"
        ),
        eol_confirm_seconds=_as_float(
            raw.get("eol_confirm_seconds"), defaults.eol_confirm_seconds, "eol_confirm_seconds"
        ),
        drain_poll_seconds=_as_float(
            raw.get("drain_poll_seconds"), defaults.drain_poll_seconds, "drain_poll_seconds"
        ),
        drain_ceiling_seconds=_as_float(
            raw.get("drain_ceiling_seconds"), defaults.drain_ceiling_seconds, "drain_ceiling_seconds"
        ),
        failsafe_timeout_seconds=_as_float(
            failsafe, defaults.failsafe_timeout_seconds, "STREAM_FAILSAFE_TIMEOUT_S"
        ),
        failsafe_grace_seconds=_as_float(
            raw.get("failsafe_grace_seconds"), defaults.failsafe_grace_seconds, "failsafe_grace_seconds"
        ),
        duration_tolerance_seconds=_as_float(
            raw.get("duration_tolerance_seconds"),
            defaults.duration_tolerance_seconds,
            "duration_tolerance_seconds",
            allow_zero=True,
        ),
        progress_interval_seconds=_as_float(
            raw.get("progress_interval_seconds"),
            defaults.progress_interval_seconds,
            "progress_interval_seconds",
        ),
        probe_timeout_seconds=_as_float(
            raw.get("probe_timeout_seconds"), defaults.probe_timeout_seconds, "probe_timeout_seconds"
        ),
    )


def _load_scheduler(raw: Dict[str, Any], env: Mapping[str, str]) -> SchedulerSettings:
    defaults = SchedulerSettings()

    check_interval = defaults.check_interval_seconds
    interval_ms = env.get("STREAM_CHECK_INTERVAL_MS")
    if interval_ms:
        check_interval = _as_float(interval_ms, check_interval * 1000, "STREAM_CHECK_INTERVAL_MS") / 1000
    elif raw.get("check_interval_seconds") is not None:
        check_interval = _as_float(raw.get("check_interval_seconds"), check_interval, "check_interval_seconds")

    return SchedulerSettings(
        check_interval_seconds=check_interval,
        retry_delay_seconds=_as_float(
            raw.get("retry_delay_seconds"), defaults.retry_delay_seconds, "retry_delay_seconds"
        ),
        ping_interval_seconds=_as_float(
            raw.get("ping_interval_seconds"), defaults.ping_interval_seconds, "ping_interval_seconds"
        ),
        ping_history_size=_as_int(
            raw.get("ping_history_size"), defaults.ping_history_size, "ping_history_size"
        ),
        file_log_size=_as_int(raw.get("file_log_size"), defaults.file_log_size, "file_log_size"),
        usage_interval_seconds=_as_float(
            raw.get("usage_interval_seconds"), defaults.usage_interval_seconds, "usage_interval_seconds"
        ),
        output_base_dir=str(
            env.get("RECORDINGS_DIR") or raw.get("output_base_dir") or defaults.output_base_dir
        ),
        final_name=str(raw.get("final_name") or defaults.final_name),
        shutdown_grace_seconds=_as_float(
            raw.get("shutdown_grace_seconds"), defaults.shutdown_grace_seconds, "shutdown_grace_seconds"
        ),
    )


def _load_aws(raw: Dict[str, Any], env: Mapping[str, str]) -> AwsConfig:
    defaults = AwsConfig()
    return AwsConfig(
        access_key=str(env.get("AWS_ACCESS_KEY") or raw.get("access_key") or ""),
        secret_access_key=str(env.get("AWS_SECRET_ACCESS_KEY") or raw.get("secret_access_key") or ""),
        region=str(env.get("AWS_REGION") or raw.get("region") or ""),
        bucket=str(env.get("AWS_S3_BUCKET") or raw.get("bucket") or ""),
        save_path=str(env.get("AWS_S3_SAVE_PATH") or raw.get("save_path") or defaults.save_path),
        presign_expiry_seconds=_as_int(
            raw.get("presign_expiry_seconds"), defaults.presign_expiry_seconds, "presign_expiry_seconds"
        ),
    )


def _load_webhook(raw: Dict[str, Any], env: Mapping[str, str]) -> WebhookConfig:
    defaults = WebhookConfig()
    return WebhookConfig(
        url=str(env.get("WEBHOOK_URL") or raw.get("url") or ""),
        secret=str(env.get("WEBHOOK_SECRET") or raw.get("secret") or ""),
        timeout_seconds=_as_float(raw.get("timeout_seconds"), defaults.timeout_seconds, "webhook.timeout_seconds"),
    )


def _load_status_api(raw: Dict[str, Any], env: Mapping[str, str]) -> StatusApiConfig:
    defaults = StatusApiConfig()
    return StatusApiConfig(
        enabled=_as_bool(env.get("STATUS_API_ENABLED", raw.get("enabled")), defaults.enabled),
        host=str(env.get("HOST") or raw.get("host") or defaults.host),
        port=_as_int(env.get("PORT") or raw.get("port"), defaults.port, "PORT"),
    )


def load_recorder_config(
    raw: Optional[Dict[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> RecorderConfig:
    """
    Build the typed recorder configuration.

    Sources, lowest precedence first:
      - built-in defaults
      - JSON document (``raw``, or the file named by RECORDER_CONFIG_PATH)
      - environment variables (STREAM_DATA, STREAM_CHECK_INTERVAL_MS, AWS_*, ...)
    """
    env = env if env is not None else os.environ
    if raw is None:
        config_path = env.get(CONFIG_PATH_ENV)
        raw = _load_json(Path(config_path)) if config_path else {}
    if not isinstance(raw, dict):
        raw = {}

    default_chunk = _as_int(
        env.get("STREAM_CHUNK_DURATION_S", raw.get("chunk_duration")),
        RecorderConfig.default_chunk_duration,
        "STREAM_CHUNK_DURATION_S",
    )
    default_upload = _as_bool(env.get("STREAM_UPLOAD_ENABLED", raw.get("upload_enabled")), True)

    stream_source = env.get("STREAM_DATA") if env.get("STREAM_DATA") else raw.get("streams", [])
    streams = _load_streams(
        stream_source,
        default_chunk_duration=default_chunk,
        default_upload=default_upload,
    )

    policy = str(env.get("UPLOAD_FAILURE_POLICY") or raw.get("upload_failure_policy") or "keep").lower()
    if policy not in UPLOAD_FAILURE_POLICIES:
        log.warning(f"Unknown upload failure policy {policy!r}; using 'keep'")
        policy = "keep"

    def section(key: str) -> Dict[str, Any]:
        value = raw.get(key)
        return value if isinstance(value, dict) else {}

    config = RecorderConfig(
        streams=streams,
        scheduler=_load_scheduler(section("scheduler"), env),
        capture=_load_capture(section("capture"), env),
        aws=_load_aws(section("aws"), env),
        webhook=_load_webhook(section("webhook"), env),
        status_api=_load_status_api(section("status_api"), env),
        server_tag=str(env.get("SYSTEM") or raw.get("server_tag") or "local"),
        default_chunk_duration=default_chunk,
        upload_failure_policy=policy,
    )

    log.info(
        f"Loaded recorder config: {len(config.streams)} stream(s), "
        f"check every {config.scheduler.check_interval_seconds:.0f}s, "
        f"failsafe {config.capture.failsafe_timeout_seconds:.0f}s"
    )
    return config
