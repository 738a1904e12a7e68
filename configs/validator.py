"""Configuration validation using JSON Schema."""

from __future__ import annotations

import copy
from typing import Any, Dict

import jsonschema
from jsonschema import Draft7Validator, validators

from exceptions import ConfigValidationError
from log_config.logger import get_logger

logger = get_logger(__name__)

_TRIGGER_SCHEMA = {
    "type": "object",
    "required": ["roi"],
    "properties": {
        "roi": {
            "type": "array",
            "items": {"type": "integer"},
            "minItems": 4,
            "maxItems": 4,
        },
        "threshold": {"type": "number", "minimum": 0.0, "maximum": 1.0, "default": 0.80},
        "template": {"type": ["string", "null"], "default": None},
    },
    "additionalProperties": False,
}

# JSON Schema for default.yaml configuration
CONFIG_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "properties": {
        "capture": {
            "type": "object",
            "default": {},
            "properties": {
                "device_id": {"type": ["string", "integer"], "default": "0"},
                "backend": {"type": "string", "enum": ["opencv", "sim"], "default": "opencv"},
                "width": {"type": "integer", "minimum": 160, "maximum": 3840, "default": 640},
                "height": {"type": "integer", "minimum": 120, "maximum": 2160, "default": 480},
                "target_fps": {"type": "number", "exclusiveMinimum": 0, "maximum": 120, "default": 30.0},
                "open_timeout_s": {"type": "number", "exclusiveMinimum": 0, "maximum": 60, "default": 5.0},
            },
        },
        "matching": {
            "type": "object",
            "default": {},
            "properties": {
                "period_ms": {"type": "integer", "minimum": 20, "maximum": 2000, "default": 100},
            },
        },
        "state": {
            "type": "object",
            "default": {},
            "properties": {
                "resolved_delay_seconds": {"type": "number", "minimum": 1, "maximum": 600, "default": 5},
                "always_voting": {"type": "boolean", "default": False},
            },
        },
        "triggers": {
            "type": "object",
            "default": {},
            "properties": {
                "start": _TRIGGER_SCHEMA,
                "win": _TRIGGER_SCHEMA,
                "lose": _TRIGGER_SCHEMA,
            },
            "additionalProperties": False,
        },
        "prediction": {
            "type": "object",
            "default": {},
            "properties": {
                "title": {"type": "string", "minLength": 1, "default": "Will the streamer win?"},
                "win_label": {"type": "string", "minLength": 1, "default": "Win"},
                "lose_label": {"type": "string", "minLength": 1, "default": "Lose"},
                "duration_seconds": {"type": "integer", "minimum": 1, "default": 60},
            },
        },
        "twitch": {
            "type": "object",
            "default": {},
            "properties": {
                "client_id": {"type": ["string", "null"], "default": ""},
                "client_secret": {"type": ["string", "null"], "default": ""},
                "redirect_uri": {
                    "type": "string",
                    "pattern": "^http://(localhost|127\\.0\\.0\\.1)(:[0-9]+)?/",
                    "default": "http://localhost:8080/callback/",
                },
                "token_path": {"type": "string", "default": "data/twitch_token.json"},
            },
        },
        "history": {
            "type": "object",
            "default": {},
            "properties": {
                "path": {"type": "string", "default": "data/history.jsonl"},
            },
        },
        "logging": {
            "type": "object",
            "default": {},
            "properties": {
                "level": {
                    "type": "string",
                    "enum": ["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"],
                    "default": "INFO",
                },
                "log_dir": {"type": "string", "default": "logs"},
                "file_logging": {"type": "boolean", "default": True},
            },
        },
    },
}


def _with_defaults(validator_class):
    """Return a validator class whose ``properties`` keyword also fills defaults.

    Missing sections are created from their ``default`` before their own
    properties are visited, so nested defaults land too.
    """
    check_properties = validator_class.VALIDATORS["properties"]

    def fill_then_check(validator, properties, instance, schema):
        if isinstance(instance, dict):
            for name, subschema in properties.items():
                if "default" in subschema and name not in instance:
                    instance[name] = copy.deepcopy(subschema["default"])
        yield from check_properties(validator, properties, instance, schema)

    return validators.extend(validator_class, {"properties": fill_then_check})


DefaultFillingValidator = _with_defaults(Draft7Validator)


def _describe(error: jsonschema.ValidationError) -> str:
    location = ".".join(str(p) for p in error.absolute_path) or "<root>"
    return f"{location}: {error.message}"


def validate_config(config: Dict[str, Any]) -> None:
    """Check a parsed config mapping and fill in defaults in place.

    Raises:
        ConfigValidationError: listing every problem found, not just the first
    """
    try:
        problems = [_describe(e) for e in DefaultFillingValidator(CONFIG_SCHEMA).iter_errors(config)]
    except jsonschema.exceptions.SchemaError as e:
        raise ConfigValidationError(f"Invalid schema definition: {e}") from e

    if problems:
        for problem in problems:
            logger.error(f"Config: {problem}")
        raise ConfigValidationError(
            f"Configuration has {len(problems)} error(s): " + "; ".join(problems),
            validation_errors=problems,
        )
    logger.debug("Configuration validation passed")


__all__ = ["validate_config", "CONFIG_SCHEMA"]
