from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("configs/default.yaml")
ENV_PREFIX = "OTRCUT_"

ENCODED_DIR_NAME = "Encoded"
DECODED_DIR_NAME = "Decoded"
CUT_DIR_NAME = "Cut"
LOG_DIR_NAME = "log"

logger = logging.getLogger(__name__)


class PathSettings(BaseModel):
    working_dir: Path = Path("~/Videos/otr")

    @property
    def root(self) -> Path:
        return self.working_dir.expanduser()

    @property
    def encoded_dir(self) -> Path:
        return self.root / ENCODED_DIR_NAME

    @property
    def decoded_dir(self) -> Path:
        return self.root / DECODED_DIR_NAME

    @property
    def cut_dir(self) -> Path:
        return self.root / CUT_DIR_NAME

    @property
    def log_dir(self) -> Path:
        return self.root / LOG_DIR_NAME

    def working_dirs(self) -> list[Path]:
        return [self.root, self.encoded_dir, self.decoded_dir, self.cut_dir]


class DecoderSettings(BaseModel):
    executable: str = "otrdecoder"
    username: str = ""
    password: str = ""


class CutterSettings(BaseModel):
    executable: str = "mkvmerge"


class CutlistSettings(BaseModel):
    server_url: str = "http://cutlist.at/"
    timeout_seconds: int = 20

    @field_validator("server_url")
    @classmethod
    def _ensure_trailing_slash(cls, value: str) -> str:
        value = value.strip()
        return value if value.endswith("/") else f"{value}/"


class PipelineSettings(BaseModel):
    max_parallel_items: int = Field(default=4, ge=1)
    cleanup: bool = True


class LoggingSettings(BaseModel):
    level: str = "INFO"
    file: Path | None = None


class Settings(BaseModel):
    paths: PathSettings = Field(default_factory=PathSettings)
    decoder: DecoderSettings = Field(default_factory=DecoderSettings)
    cutter: CutterSettings = Field(default_factory=CutterSettings)
    cutlist: CutlistSettings = Field(default_factory=CutlistSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load typed settings from YAML with `OTRCUT_<SECTION>__<KEY>` overrides.

    A missing file at the default location means built-in defaults; an
    explicitly requested file must exist.
    """

    explicit = config_path or os.getenv(f"{ENV_PREFIX}CONFIG")
    resolved_path = Path(explicit or DEFAULT_CONFIG_PATH).expanduser()
    if resolved_path.is_file():
        raw_config = yaml.safe_load(resolved_path.read_text(encoding="utf-8")) or {}
    elif explicit and resolved_path != DEFAULT_CONFIG_PATH:
        raise FileNotFoundError(f"Configuration file not found: {resolved_path}")
    else:
        logger.info("No configuration file at %s, using defaults", resolved_path)
        raw_config = {}

    data = Settings.model_validate(raw_config).model_dump(mode="python")
    for name, raw_value in os.environ.items():
        if not name.startswith(ENV_PREFIX) or name == f"{ENV_PREFIX}CONFIG":
            continue
        path = [part.lower() for part in name[len(ENV_PREFIX) :].split("__")]
        _apply_override(data, path, raw_value)

    return Settings.model_validate(data)


def ensure_working_dirs(settings: Settings) -> list[Path]:
    """Create the working directory layout; returns the directories that could not be created."""

    failed: list[Path] = []
    for directory in [*settings.paths.working_dirs(), settings.paths.log_dir]:
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("Cannot create directory %s: %s", directory, exc)
            failed.append(directory)
    return failed


def _apply_override(data: dict[str, Any], path: list[str], raw_value: str) -> None:
    current: Any = data
    for segment in path[:-1]:
        if not isinstance(current, dict) or segment not in current:
            return
        current = current[segment]

    if not isinstance(current, dict):
        return

    final_key = path[-1]
    if final_key not in current:
        return

    current[final_key] = _coerce_value(raw_value, current[final_key])


def _coerce_value(raw_value: str, existing_value: Any) -> Any:
    if existing_value is None:
        return raw_value or None
    if isinstance(existing_value, bool):
        return raw_value.lower() in {"1", "true", "yes", "on"}
    if isinstance(existing_value, int) and not isinstance(existing_value, bool):
        return int(raw_value)
    if isinstance(existing_value, float):
        return float(raw_value)
    if isinstance(existing_value, list | dict):
        return json.loads(raw_value)
    if isinstance(existing_value, Path):
        return Path(raw_value).expanduser()
    return raw_value
