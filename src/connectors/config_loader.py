"""Load, validate, and hot-reload connector configuration.

The config lives in ``connectors.yaml`` alongside this module (or at
``Settings.connectors_config_path``).  At startup it is loaded once and
cached.  Call ``reload_connectors_config()`` to re-read from disk after an
admin update; running schedulers pick up the change through
``ConnectorHost.apply_configuration``.

Usage::

    from src.connectors.config_loader import get_connectors_config

    config = get_connectors_config()
    dexcom = config.get("dexcom")
    dexcom.enabled            # False
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError

from src.connectors.base import ConnectorConfiguration

logger = logging.getLogger("nocturne.connectors.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "connectors.yaml"


@dataclass
class ConnectorsConfig:
    """Complete, validated connector configuration.

    Attributes:
        version:    Config schema version string.
        connectors: Connector name → configuration.
    """

    version: str
    connectors: dict[str, ConnectorConfiguration]
    _raw: dict = field(default_factory=dict, repr=False)

    def get(self, name: str) -> ConnectorConfiguration | None:
        return self.connectors.get(name)

    def names(self) -> list[str]:
        return sorted(self.connectors)

    def enabled_connectors(self) -> list[ConnectorConfiguration]:
        return [c for c in self.connectors.values() if c.enabled]


class ConfigValidationError(ValueError):
    """Raised when connectors.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    import yaml

    if not path.exists():
        raise FileNotFoundError(f"Connector config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> ConnectorsConfig:
    """Validate the raw YAML dict and construct a ConnectorsConfig.

    Every problem is collected before raising, so one run of the loader
    reports the whole list.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    version = str(raw.get("version", "1.0"))

    connectors_raw = raw.get("connectors")
    if not connectors_raw:
        errors.append("'connectors' section is missing or empty")
        connectors_raw = {}
    elif not isinstance(connectors_raw, dict):
        errors.append("'connectors' must be a mapping of name→settings")
        connectors_raw = {}

    connectors: dict[str, ConnectorConfiguration] = {}
    for name, section in connectors_raw.items():
        if section is None:
            section = {}
        if not isinstance(section, dict):
            errors.append(f"connectors.{name} must be a mapping")
            continue

        fields = dict(section)
        fields.setdefault("name", name)
        fields.setdefault("source", name)
        if fields["name"] != name:
            errors.append(
                f"connectors.{name}.name = {fields['name']!r} does not match its key"
            )
            continue

        try:
            connectors[name] = ConnectorConfiguration(**fields)
        except ValidationError as exc:
            for err in exc.errors():
                loc = ".".join(str(part) for part in err["loc"])
                errors.append(f"connectors.{name}.{loc}: {err['msg']}")

    if errors:
        raise ConfigValidationError(
            f"connectors.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return ConnectorsConfig(version=version, connectors=connectors, _raw=raw)


def load_connectors_config(path: Path | None = None) -> ConnectorsConfig:
    """Load and validate the connector config from disk.

    Args:
        path: Override path to YAML. Uses the bundled connectors.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info(
        "Loaded connector config v%s from %s (%d connectors, %d enabled)",
        config.version,
        target,
        len(config.connectors),
        len(config.enabled_connectors()),
    )
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: ConnectorsConfig | None = None
_config_lock = threading.Lock()


def get_connectors_config(path: Path | None = None) -> ConnectorsConfig:
    """Return the global ConnectorsConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_connectors_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_connectors_config(path)
    return _config


def reload_connectors_config(path: Path | None = None) -> ConnectorsConfig:
    """Reload the connector config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_connectors_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info(
        "Reloaded connector config: %s → %s",
        old_version,
        new_config.version,
    )
    return new_config
