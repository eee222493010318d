"""Configuration loading and validation for the YAML stonectl config file."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from stonectl.core.errors import ConfigError, ConfigValidationError

LOGGER = logging.getLogger(__name__)

DEFAULT_VENDOR_ID = 0x5054


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ConfigValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class ConnectionConfig:
    sync_interval_s: float = 15.0
    auto_connect: bool = True


@dataclass(frozen=True)
class PairingConfig:
    scan_interval_s: float = 10.0
    error_display_limit: int = 90
    synthetic_candidates: bool = False
    name_filter: str = "STONE"


@dataclass(frozen=True)
class TelemetryConfig:
    battery_poll_interval_s: float = 30.0


@dataclass(frozen=True)
class TransportConfig:
    rfcomm_channel: int = 1
    command_timeout_s: float = 10.0


@dataclass(frozen=True)
class Config:
    vendor_id: int = DEFAULT_VENDOR_ID
    registry_path: Path = field(default_factory=lambda: _data_dir() / "devices.json")
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    pairing: PairingConfig = field(default_factory=PairingConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)


def _config_dir() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "stonectl"


def _data_dir() -> Path:
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return xdg_data / "stonectl"


def default_config_path() -> Path:
    return _config_dir() / "config.yaml"


def _load_schema_validator() -> Any:
    schema_text = resources.files("stonectl.schemas").joinpath("config.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Could not read config file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigValidationError(f"Config file {path} must contain a mapping at root")
    return loaded


def build_config(doc: dict[str, Any], source: Path | str = "<config>") -> Config:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ConfigValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    defaults = Config()
    registry_path = defaults.registry_path
    if "registry_path" in doc:
        registry_path = Path(doc["registry_path"]).expanduser()

    return Config(
        vendor_id=int(doc.get("vendor_id", defaults.vendor_id)),
        registry_path=registry_path,
        connection=ConnectionConfig(**doc.get("connection", {})),
        pairing=PairingConfig(**doc.get("pairing", {})),
        telemetry=TelemetryConfig(**doc.get("telemetry", {})),
        transport=TransportConfig(**doc.get("transport", {})),
    )


def load_config(path: Path | None = None) -> Config:
    """Load the config file, falling back to defaults when none exists.

    An explicit *path* must exist; the default location is optional.
    """
    if path is None:
        path = default_config_path()
        if not path.is_file():
            LOGGER.debug("No config file at %s, using defaults", path)
            return build_config({}, path)
    config = build_config(_read_yaml(path), path)
    LOGGER.debug("Loaded config from %s", path)
    return config
