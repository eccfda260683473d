# scriptvet: Remote Script Trust Verification
# Copyright (C) 2026 scriptvet Project Contributors
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""Configuration: ~/.scriptvet/config.yaml, environment variables, engine settings.

Precedence, lowest to highest: built-in defaults, the ``engine:`` section of
the config file, ``SCRIPTVET_*`` environment variables, explicit overrides
(CLI flags).
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from scriptvet.exceptions import ConfigError
from scriptvet.scanner.content_fetcher import (
    DEFAULT_FETCH_TIMEOUT,
    DEFAULT_MAX_CONCURRENT_FETCHES,
    DEFAULT_MAX_RESPONSE_BYTES,
)

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".scriptvet"
CONFIG_FILE = CONFIG_DIR / "config.yaml"

DEFAULT_MAX_DEPTH = 3

# env var -> EngineSettings field
ENGINE_ENV_VARS = {
    "SCRIPTVET_MAX_DEPTH": "max_depth",
    "SCRIPTVET_FETCH_TIMEOUT": "fetch_timeout",
    "SCRIPTVET_MAX_CONCURRENT_FETCHES": "max_concurrent_fetches",
    "SCRIPTVET_MAX_RESPONSE_BYTES": "max_response_bytes",
    "SCRIPTVET_REGISTRY": "registry_path",
}


class EngineSettings(BaseModel):
    """Tunables for one recursive assessment."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_depth: int = Field(default=DEFAULT_MAX_DEPTH, ge=0, le=10)
    fetch_timeout: float = Field(default=DEFAULT_FETCH_TIMEOUT, gt=0, le=300)
    max_concurrent_fetches: int = Field(default=DEFAULT_MAX_CONCURRENT_FETCHES, ge=1, le=64)
    max_response_bytes: int = Field(default=DEFAULT_MAX_RESPONSE_BYTES, ge=1024)
    registry_path: Optional[Path] = None


def load_config() -> dict:
    """Load scriptvet config from ~/.scriptvet/config.yaml.

    Returns an empty dict if no config file exists or the file is invalid.
    """
    if not CONFIG_FILE.exists():
        return {}
    try:
        with open(CONFIG_FILE, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Could not load config from %s: %s", CONFIG_FILE, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: top level is not a mapping", CONFIG_FILE)
        return {}
    return data


def save_config(config: dict) -> Path:
    """Save scriptvet config to ~/.scriptvet/config.yaml.

    Returns the path to the saved config file.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    with open(CONFIG_FILE, "w", encoding="utf-8") as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False)
    return CONFIG_FILE


def load_engine_settings(
    overrides: Optional[dict[str, Any]] = None,
    config: Optional[dict] = None,
) -> EngineSettings:
    """Merge defaults, config file, environment and overrides into EngineSettings.

    ``None`` values in ``overrides`` are ignored so unset CLI flags fall
    through to the layers below.

    Raises:
        ConfigError: A layer supplied a value outside the allowed bounds.
    """
    if config is None:
        config = load_config()

    values: dict[str, Any] = {}

    engine_cfg = config.get("engine", {})
    if isinstance(engine_cfg, dict):
        values.update({k: v for k, v in engine_cfg.items() if v is not None})
    elif engine_cfg is not None:
        logger.warning("Ignoring 'engine' config section: not a mapping")

    for env_var, field in ENGINE_ENV_VARS.items():
        raw = os.environ.get(env_var, "").strip()
        if raw:
            values[field] = raw

    if overrides:
        values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        settings = EngineSettings(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid engine settings: {e}") from e

    logger.debug("Engine settings: %s", settings)
    return settings
