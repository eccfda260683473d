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

"""Content digests for fetched scripts.

Digests are SHA-256 over the exact response body. Unlike source-tree
hashing, no line-ending normalization is applied: a registry pin must
match the bytes a shell would actually execute.

Registry files may write a digest as bare hex or as ``sha256:<hex>`` in
any letter case; comparison always goes through ``normalize_digest``.
"""

from __future__ import annotations

import hashlib
import re

DIGEST_ALGORITHM = "sha256"
DIGEST_PREFIX = f"{DIGEST_ALGORITHM}:"

_HEX_DIGEST = re.compile(r"^[0-9a-f]{64}$")


def hash_content(content: bytes) -> str:
    """SHA-256 of raw bytes as lowercase hex."""
    return hashlib.sha256(content).hexdigest()


def normalize_digest(value: str) -> str:
    """Canonical form of a digest string: lowercase hex, no algorithm prefix.

    Raises:
        ValueError: if the value is not a SHA-256 hex digest.
    """
    digest = value.strip().lower().removeprefix(DIGEST_PREFIX)
    if not _HEX_DIGEST.match(digest):
        raise ValueError(f"Not a SHA-256 hex digest: {value!r}")
    return digest


def digests_match(actual: str, expected: str) -> bool:
    """Exact comparison of two digests after normalization.

    A malformed digest on either side never matches.
    """
    try:
        return normalize_digest(actual) == normalize_digest(expected)
    except ValueError:
        return False
