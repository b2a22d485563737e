from __future__ import annotations

"""Configuration loading for the exhibit runtime.

Settings come from the environment first, then the local `.secrets` file,
then defaults. Timing options keep the millisecond names operators already
know from the kiosk resource strings.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional


def _parse_secrets_file(path: Path) -> Dict[str, str]:
    """Parse KEY=VALUE lines from the local secrets file.

    The parser is intentionally permissive:
    - ignores blank lines/comments
    - accepts surrounding whitespace around keys/values
    - strips both single and double wrapping quotes
    """
    values: Dict[str, str] = {}
    if not path.exists():
        return values

    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


@dataclass(frozen=True)
class Settings:
    """Runtime settings loaded from environment and/or `.secrets`."""

    api_interval_ms: float
    faces_disappear_grace_ms: float
    min_replay_delay_ms: float
    tick_interval_ms: float
    camera_device_name: str
    face_api_url: str
    bot_api_url: str
    camera_frame_width: int
    camera_frame_height: int
    camera_max_read_failures: int
    face_min_size_px: int
    jpeg_quality: int
    crop_to_faces: bool
    crop_margin_ratio: float
    probe_failure_counts_as_absent: bool
    http_timeout_seconds: float
    identity_db_path: Path
    announce_ip_address: bool
    speech_enabled: bool
    microphone_device_index: Optional[int]
    tts_rate: int
    tts_voice: str
    telegram_bot_token: str
    telegram_chat_id: str
    snapshot_dir: Path


def _get_env(name: str, file_values: Dict[str, str], default: str = "") -> str:
    """Read a setting from env first, then file, then default."""
    return os.getenv(name, file_values.get(name, default)).strip()


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _parse_optional_int(raw: str) -> Optional[int]:
    text = raw.strip()
    if not text:
        return None
    return int(text)


def load_settings(secrets_path: str = ".secrets") -> Settings:
    """Load and validate app settings.

    A missing `FACE_API_URL` raises `ValueError`; everything else falls back
    to defaults suited to a single USB webcam kiosk.
    """
    file_values = _parse_secrets_file(Path(secrets_path))

    face_api_url = _get_env("FACE_API_URL", file_values)
    if not face_api_url:
        raise ValueError("Missing FACE_API_URL. Set it in .secrets or environment.")

    tick_interval_ms = float(_get_env("TICK_INTERVAL_MS", file_values, "300"))
    if tick_interval_ms <= 0:
        raise ValueError(f"TICK_INTERVAL_MS must be > 0, got {tick_interval_ms}")

    return Settings(
        api_interval_ms=float(_get_env("API_INTERVAL_MS", file_values, "5000")),
        faces_disappear_grace_ms=float(_get_env("FACES_DISAPPEAR_GRACE_MS", file_values, "3000")),
        min_replay_delay_ms=float(_get_env("MIN_REPLAY_DELAY_MS", file_values, "10000")),
        tick_interval_ms=tick_interval_ms,
        camera_device_name=_get_env("CAMERA_DEVICE_NAME", file_values),
        face_api_url=face_api_url,
        bot_api_url=_get_env("BOT_API_URL", file_values),
        camera_frame_width=int(_get_env("CAMERA_FRAME_WIDTH", file_values, "0")),
        camera_frame_height=int(_get_env("CAMERA_FRAME_HEIGHT", file_values, "0")),
        camera_max_read_failures=int(_get_env("CAMERA_MAX_READ_FAILURES", file_values, "5")),
        face_min_size_px=int(_get_env("FACE_MIN_SIZE_PX", file_values, "40")),
        jpeg_quality=int(_get_env("JPEG_QUALITY", file_values, "90")),
        crop_to_faces=_parse_bool(_get_env("CROP_TO_FACES", file_values, "false")),
        crop_margin_ratio=float(_get_env("CROP_MARGIN_RATIO", file_values, "0.25")),
        probe_failure_counts_as_absent=_parse_bool(
            _get_env("PROBE_FAILURE_COUNTS_AS_ABSENT", file_values, "true")
        ),
        http_timeout_seconds=float(_get_env("HTTP_TIMEOUT_SECONDS", file_values, "10")),
        identity_db_path=Path(_get_env("IDENTITY_DB_PATH", file_values, "data/device.db")),
        announce_ip_address=_parse_bool(_get_env("ANNOUNCE_IP_ADDRESS", file_values, "true")),
        speech_enabled=_parse_bool(_get_env("SPEECH_ENABLED", file_values, "true")),
        microphone_device_index=_parse_optional_int(_get_env("MICROPHONE_DEVICE_INDEX", file_values)),
        tts_rate=int(_get_env("TTS_RATE", file_values, "175")),
        tts_voice=_get_env("TTS_VOICE", file_values),
        telegram_bot_token=_get_env("TELEGRAM_BOT_TOKEN", file_values),
        telegram_chat_id=_get_env("TELEGRAM_CHAT_ID", file_values),
        snapshot_dir=Path(_get_env("SNAPSHOT_DIR", file_values, "data/snapshots")),
    )
