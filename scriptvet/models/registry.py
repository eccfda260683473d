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

"""Known-script registry: URL to expected content digest.

Persisted as YAML or JSON, either a top-level list or a mapping with a
``scripts`` list, of ``{url, hash}`` records in curation order::

    scripts:
      - url: https://sh.rustup.rs
        hash: sha256:0f1e...

A URL may appear more than once (e.g. to accept two pinned releases).
The registry is loaded once per path and is never mutated by the engine.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from scriptvet.crypto.hasher import normalize_digest
from scriptvet.exceptions import RegistryError
from scriptvet.scanner.reference_validator import normalize_url

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY_PATH = Path(__file__).parent.parent / "rules" / "known_scripts.yaml"


class KnownScript(BaseModel):
    """One registry record."""

    model_config = ConfigDict(frozen=True)

    url: str
    hash: str

    @field_validator("url")
    @classmethod
    def _normalize_url(cls, value: str) -> str:
        url = normalize_url(value.strip())
        if url is None:
            raise ValueError(f"not an absolute http(s) URL: {value!r}")
        return url

    @field_validator("hash")
    @classmethod
    def _normalize_hash(cls, value: str) -> str:
        return normalize_digest(value)


class KnownScriptRegistry:
    """Read-only lookup of expected digests by normalized URL."""

    def __init__(self, entries: Iterable[KnownScript] = ()) -> None:
        self._entries: tuple[KnownScript, ...] = tuple(entries)
        index: dict[str, frozenset[str]] = {}
        for entry in self._entries:
            index[entry.url] = index.get(entry.url, frozenset()) | {entry.hash}
        self._index: Mapping[str, frozenset[str]] = MappingProxyType(index)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, url: object) -> bool:
        return isinstance(url, str) and self.expected_digests(url) is not None

    @property
    def entries(self) -> tuple[KnownScript, ...]:
        return self._entries

    def expected_digests(self, url: str) -> Optional[frozenset[str]]:
        """Digests accepted for a URL, or None if the URL is unknown."""
        normalized = normalize_url(url)
        if normalized is None:
            return None
        return self._index.get(normalized)

    @classmethod
    def from_records(cls, records: Iterable[Mapping[str, Any]]) -> KnownScriptRegistry:
        """Build a registry from raw ``{url, hash}`` mappings.

        Raises:
            RegistryError: if any record is malformed.
        """
        entries = []
        for position, record in enumerate(records):
            try:
                entries.append(KnownScript.model_validate(record))
            except ValidationError as e:
                raise RegistryError(f"Invalid registry record #{position}: {e}") from e
        return cls(entries)


def _parse_registry_text(text: str, suffix: str) -> Any:
    if suffix == ".json":
        return json.loads(text)
    return yaml.safe_load(text)


def load_registry(path: Path) -> KnownScriptRegistry:
    """Load a registry file (YAML, or JSON by ``.json`` suffix).

    Raises:
        RegistryError: if the file cannot be read or is malformed.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise RegistryError(f"Could not read registry {path}: {e}") from e

    try:
        data = _parse_registry_text(text, path.suffix.lower())
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise RegistryError(f"Could not parse registry {path}: {e}") from e

    if data is None:
        data = []
    if isinstance(data, dict):
        data = data.get("scripts") or []
    if not isinstance(data, list) or not all(isinstance(r, dict) for r in data):
        raise RegistryError(f"Registry {path} must be a list of {{url, hash}} records")

    registry = KnownScriptRegistry.from_records(data)
    logger.info("Loaded %d known script(s) from %s", len(registry), path)
    return registry


_registry_cache: dict[Path, KnownScriptRegistry] = {}


def get_registry(path: Optional[Path] = None) -> KnownScriptRegistry:
    """Return the process-wide registry for a path, loading it on first use."""
    resolved = (path or DEFAULT_REGISTRY_PATH).resolve()
    if resolved not in _registry_cache:
        _registry_cache[resolved] = load_registry(resolved)
    return _registry_cache[resolved]
