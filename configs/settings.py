"""Configuration loading for Chohan."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Optional, Tuple

import yaml

from configs.validator import validate_config
from contracts import Roi, TriggerName
from exceptions import InvalidConfigError
from log_config.logger import get_logger

logger = get_logger(__name__)

ENV_CLIENT_ID = "CHOHAN_TWITCH_CLIENT_ID"
ENV_CLIENT_SECRET = "CHOHAN_TWITCH_CLIENT_SECRET"

DEFAULT_CONFIG_PATH = Path(__file__).with_name("default.yaml")


@dataclass(frozen=True)
class CaptureConfig:
    device_id: str = "0"
    backend: str = "opencv"
    width: int = 640
    height: int = 480
    target_fps: float = 30.0
    open_timeout_s: float = 5.0


@dataclass(frozen=True)
class MatchingConfig:
    period_ms: int = 100


@dataclass(frozen=True)
class StateConfig:
    resolved_delay_seconds: float = 5.0
    always_voting: bool = False


@dataclass(frozen=True)
class TriggerEntry:
    name: TriggerName
    roi: Tuple[int, int, int, int] = (0, 0, 0, 0)
    threshold: float = 0.80
    template_path: Optional[Path] = None


@dataclass(frozen=True)
class PredictionConfig:
    title: str = "Will the streamer win?"
    win_label: str = "Win"
    lose_label: str = "Lose"
    duration_seconds: int = 60


@dataclass(frozen=True)
class TwitchConfig:
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = "http://localhost:8080/callback/"
    token_path: Path = Path("data/twitch_token.json")


@dataclass(frozen=True)
class HistoryConfig:
    path: Path = Path("data/history.jsonl")


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    log_dir: Path = Path("logs")
    file_logging: bool = True


@dataclass(frozen=True)
class AppConfig:
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    state: StateConfig = field(default_factory=StateConfig)
    triggers: Dict[TriggerName, TriggerEntry] = field(default_factory=dict)
    prediction: PredictionConfig = field(default_factory=PredictionConfig)
    twitch: TwitchConfig = field(default_factory=TwitchConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _resolve(base_dir: Path, value: Optional[str]) -> Optional[Path]:
    if not value:
        return None
    path = Path(value).expanduser()
    return path if path.is_absolute() else base_dir / path


def _parse_triggers(data: Dict, base_dir: Path) -> Dict[TriggerName, TriggerEntry]:
    triggers: Dict[TriggerName, TriggerEntry] = {}
    for name in TriggerName:
        entry = data.get(name.value)
        if entry is None:
            continue
        x, y, width, height = (int(v) for v in entry["roi"])
        # Validates non-negative size
        Roi(x, y, width, height)
        triggers[name] = TriggerEntry(
            name=name,
            roi=(x, y, width, height),
            threshold=float(entry["threshold"]),
            template_path=_resolve(base_dir, entry.get("template")),
        )
    return triggers


def apply_env_overrides(config: AppConfig) -> AppConfig:
    """Override Twitch client credentials from the environment."""
    client_id = os.environ.get(ENV_CLIENT_ID)
    client_secret = os.environ.get(ENV_CLIENT_SECRET)
    if not client_id and not client_secret:
        return config
    twitch = replace(
        config.twitch,
        client_id=client_id or config.twitch.client_id,
        client_secret=client_secret or config.twitch.client_secret,
    )
    logger.debug("Twitch client credentials taken from environment")
    return replace(config, twitch=twitch)


def load_config(path: Path) -> AppConfig:
    """Load and validate configuration from YAML file.

    Relative file paths inside the configuration (templates, token file,
    history, log directory) are resolved against the file's directory.

    Args:
        path: Path to configuration file

    Returns:
        Validated AppConfig instance

    Raises:
        InvalidConfigError: File missing, unparseable, or inconsistent
        ConfigValidationError: Schema validation failed
    """
    path = Path(path)
    try:
        logger.info(f"Loading configuration from {path}")
        if not path.exists():
            raise InvalidConfigError(f"Configuration file not found: {path}")

        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise InvalidConfigError(f"Configuration root must be a mapping: {path}")

        # Validate against JSON Schema (also fills defaults)
        validate_config(data)

    except yaml.YAMLError as e:
        logger.error(f"Failed to parse YAML configuration: {e}")
        raise InvalidConfigError(f"Failed to parse configuration file: {e}")

    base_dir = path.parent
    try:
        capture_data = dict(data["capture"])
        capture_data["device_id"] = str(capture_data["device_id"])
        twitch_data = data["twitch"]
        logging_data = data["logging"]

        config = AppConfig(
            capture=CaptureConfig(**capture_data),
            matching=MatchingConfig(**data["matching"]),
            state=StateConfig(**data["state"]),
            triggers=_parse_triggers(data["triggers"], base_dir),
            prediction=PredictionConfig(**data["prediction"]),
            twitch=TwitchConfig(
                client_id=str(twitch_data["client_id"] or ""),
                client_secret=str(twitch_data["client_secret"] or ""),
                redirect_uri=twitch_data["redirect_uri"],
                token_path=_resolve(base_dir, twitch_data["token_path"]),
            ),
            history=HistoryConfig(path=_resolve(base_dir, data["history"]["path"])),
            logging=LoggingConfig(
                level=logging_data["level"],
                log_dir=_resolve(base_dir, logging_data["log_dir"]),
                file_logging=logging_data["file_logging"],
            ),
        )
    except (KeyError, TypeError, ValueError) as e:
        logger.error(f"Failed to construct configuration objects: {e}")
        raise InvalidConfigError(f"Failed to construct configuration: {e}")

    config = apply_env_overrides(config)
    logger.info(
        f"Configuration loaded: {config.capture.backend} device {config.capture.device_id} "
        f"{config.capture.width}x{config.capture.height}, {len(config.triggers)} triggers"
    )
    return config


__all__ = [
    "AppConfig",
    "CaptureConfig",
    "DEFAULT_CONFIG_PATH",
    "HistoryConfig",
    "LoggingConfig",
    "MatchingConfig",
    "PredictionConfig",
    "StateConfig",
    "TriggerEntry",
    "TwitchConfig",
    "apply_env_overrides",
    "load_config",
]
