"""
Configuration loader for the Live Gateway.
"""

import copy
import os
import yaml
from pathlib import Path

from jsonschema import Draft202012Validator

CONFIG_ENV_VAR = "LIVE_GATEWAY_CONFIG"
DEFAULT_CONFIG_PATH = "config/gateway.yaml"


class ConfigError(ValueError):
    """Raised when the configuration file is missing or invalid."""


DEFAULTS = {
    "gateway": {"id": "live-gateway"},
    "rooms": [],
    "deduplication": {
        "timestamp_bucket_seconds": 1,
        "event": {"expiration_ms": 60000, "max_entries": 1000},
        "message": {"enabled": True, "expiration_ms": 30000, "max_entries": 500},
    },
    "pipeline": {
        "dispatch_streak_updates": False,
        "malformed_warning_threshold": 25,
    },
    "gift_catalog": {"path": None},
    "recording": {"enabled": False, "directory": "data/sessions"},
    "api": {"enabled": True, "host": "127.0.0.1", "port": 8080},
    "metrics": {"enabled": True, "port": 9090},
    "logging": {"level": "INFO", "json": False},
}

_positive_int = {"type": "integer", "minimum": 1}

CONFIG_SCHEMA = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "LiveGatewayConfig",
    "type": "object",
    "required": ["gateway", "rooms"],
    "properties": {
        "gateway": {
            "type": "object",
            "required": ["id"],
            "properties": {"id": {"type": "string", "minLength": 1}},
        },
        "rooms": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id"],
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "source": {
                        "type": "object",
                        "properties": {
                            "type": {"enum": ["queue", "replay"]},
                            "path": {"type": "string"},
                            "speed": {"type": "number", "minimum": 0},
                            "max_queue_size": _positive_int,
                        },
                        "if": {"properties": {"type": {"const": "replay"}}, "required": ["type"]},
                        "then": {"required": ["path"]},
                    },
                },
            },
        },
        "deduplication": {
            "type": "object",
            "properties": {
                "timestamp_bucket_seconds": {"type": "number", "exclusiveMinimum": 0},
                "event": {
                    "type": "object",
                    "properties": {"expiration_ms": _positive_int, "max_entries": _positive_int},
                },
                "message": {
                    "type": "object",
                    "properties": {
                        "enabled": {"type": "boolean"},
                        "expiration_ms": _positive_int,
                        "max_entries": _positive_int,
                    },
                },
            },
        },
        "pipeline": {
            "type": "object",
            "properties": {
                "dispatch_streak_updates": {"type": "boolean"},
                "malformed_warning_threshold": _positive_int,
            },
        },
        "gift_catalog": {
            "type": "object",
            "properties": {"path": {"type": ["string", "null"]}},
        },
        "recording": {
            "type": "object",
            "properties": {"enabled": {"type": "boolean"}, "directory": {"type": "string"}},
        },
        "api": {
            "type": "object",
            "properties": {
                "enabled": {"type": "boolean"},
                "host": {"type": "string"},
                "port": {"type": "integer", "minimum": 1, "maximum": 65535},
            },
        },
        "metrics": {
            "type": "object",
            "properties": {
                "enabled": {"type": "boolean"},
                "port": {"type": "integer", "minimum": 1, "maximum": 65535},
            },
        },
        "logging": {
            "type": "object",
            "properties": {
                "level": {"enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]},
                "json": {"type": "boolean"},
            },
        },
    },
}


def load_config(config_path: str | None = None) -> dict:
    """Load gateway configuration from YAML, merge defaults and validate."""
    config_path = config_path or os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH)
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ConfigError(f"Configuration root must be a mapping: {config_path}")

    config = merge_defaults(raw)
    validate_config(config)
    return config


def merge_defaults(raw: dict) -> dict:
    return _deep_merge(copy.deepcopy(DEFAULTS), raw)


def validate_config(config: dict) -> None:
    """Validate against CONFIG_SCHEMA; all violations are reported at once."""
    validator = Draft202012Validator(CONFIG_SCHEMA)
    errors = sorted(validator.iter_errors(config), key=lambda e: list(e.path))
    if errors:
        details = "; ".join(f"{e.json_path}: {e.message}" for e in errors)
        raise ConfigError(f"Invalid configuration: {details}")

    room_ids = [room["id"] for room in config["rooms"]]
    if len(room_ids) != len(set(room_ids)):
        raise ConfigError("Room ids must be unique")


def _deep_merge(base: dict, override: dict) -> dict:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _deep_merge(base[key], value)
        else:
            base[key] = value
    return base
