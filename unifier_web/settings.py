"""
Runtime settings (paths, limits, timers) from the environment, plus the
encoding configuration persisted as JSON.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import unifier

logger = logging.getLogger("unifier-web")

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

TEMP_DIR    = Path(os.environ.get("UNIFIER_TEMP_DIR", Path(tempfile.gettempdir()) / "media-unifier"))
CONFIG_FILE = Path(os.environ.get("CONFIG_FILE", Path.home() / ".config" / "media-unifier" / "settings.json"))

DEFAULT_CONFIG = dict(unifier.DEFAULT_ENCODING)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}, using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}, using {default}")
        return default


@dataclass
class Settings:
    temp_dir:         Path = field(default_factory=lambda: TEMP_DIR)
    config_file:      Path = field(default_factory=lambda: CONFIG_FILE)
    log_file:         Optional[str] = None
    ffmpeg_bin:       str = "ffmpeg"
    ffprobe_bin:      str = "ffprobe"
    max_upload_bytes: int = 2 * 1024 * 1024 * 1024
    max_files:        int = 20
    asset_ttl:        float = 60 * 60        # unconsumed uploads
    output_ttl:       float = 60 * 60        # merged output nobody downloaded
    download_grace:   float = 60             # delay between download and delete
    sweep_interval:   float = 15 * 60
    sweep_max_age:    float = 4 * 60 * 60
    shutdown_grace:   float = 10            # running jobs get this long on shutdown
    host:             str = "0.0.0.0"
    port:             int = 3000

    def __post_init__(self) -> None:
        # The concat demuxer resolves relative entries against the list file
        self.temp_dir = Path(self.temp_dir).resolve()
        self.config_file = Path(self.config_file)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            temp_dir=TEMP_DIR,
            config_file=CONFIG_FILE,
            log_file=os.environ.get("LOG_FILE") or None,
            ffmpeg_bin=os.environ.get("FFMPEG_BIN", "ffmpeg"),
            ffprobe_bin=os.environ.get("FFPROBE_BIN", "ffprobe"),
            max_upload_bytes=_env_int("MAX_UPLOAD_BYTES", 2 * 1024 * 1024 * 1024),
            max_files=_env_int("MAX_FILES", 20),
            asset_ttl=_env_float("ASSET_TTL", 60 * 60),
            output_ttl=_env_float("OUTPUT_TTL", 60 * 60),
            download_grace=_env_float("DOWNLOAD_GRACE", 60),
            sweep_interval=_env_float("SWEEP_INTERVAL", 15 * 60),
            sweep_max_age=_env_float("SWEEP_MAX_AGE", 4 * 60 * 60),
            shutdown_grace=_env_float("SHUTDOWN_GRACE", 10),
            host=os.environ.get("HOST", "0.0.0.0"),
            port=_env_int("PORT", 3000),
        )


# ---------------------------------------------------------------------------
# Config persistence
# ---------------------------------------------------------------------------

def load_config(path: Path) -> dict:
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        try:
            with open(path) as f:
                saved = json.load(f)
            return {**DEFAULT_CONFIG, **saved}
        except Exception as e:
            logger.warning(f"Failed to load config: {e}, using defaults")
    return dict(DEFAULT_CONFIG)


def save_config(path: Path, cfg: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(cfg, f, indent=2)
