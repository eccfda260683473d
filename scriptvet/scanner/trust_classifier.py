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

"""Trust classifier: compare fetched scripts against the known-script registry."""

from __future__ import annotations

import logging

from scriptvet.crypto.hasher import digests_match
from scriptvet.models.assessment import FetchOutcome, TrustRecord, TrustStatus
from scriptvet.models.registry import KnownScriptRegistry

logger = logging.getLogger(__name__)


def classify_outcome(outcome: FetchOutcome, registry: KnownScriptRegistry) -> TrustRecord:
    """Classify one fetch outcome.

    - fetch error                           -> error (detail = fetch error)
    - digest equals a registry digest       -> verified
    - URL not in registry / digest differs  -> unverified
    """
    if outcome.error is not None:
        return TrustRecord(url=outcome.url, status=TrustStatus.ERROR, detail=outcome.error)

    actual = outcome.digest or ""
    expected = registry.expected_digests(outcome.url)

    if expected is None:
        return TrustRecord(
            url=outcome.url,
            status=TrustStatus.UNVERIFIED,
            detail=f"Not in the known-script registry (sha256 {actual})",
        )

    if any(digests_match(actual, digest) for digest in expected):
        logger.debug("Verified %s", outcome.url)
        return TrustRecord(url=outcome.url, status=TrustStatus.VERIFIED)

    logger.warning("Digest mismatch for %s", outcome.url)
    return TrustRecord(
        url=outcome.url,
        status=TrustStatus.UNVERIFIED,
        detail=(
            f"Content changed: sha256 {actual} does not match "
            f"registry {', '.join(sorted(expected))}"
        ),
    )


def classify_outcomes(
    outcomes: list[FetchOutcome], registry: KnownScriptRegistry
) -> list[TrustRecord]:
    """Classify outcomes, sorted by URL."""
    return [classify_outcome(o, registry) for o in sorted(outcomes, key=lambda o: o.url)]
