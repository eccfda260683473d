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

"""Reference validator: narrow extracted candidates to fetchable URLs.

Rules, applied in order:
1. Reject anything carrying shell-expansion syntax (``$``, backtick, braces)
   or quote/paren characters. ``https://host/${branch}/x.sh`` is a template,
   not an address; fetching it would hit the wrong resource.
2. Parse as an absolute URL; reject on failure or a missing host.
3. Accept only http and https.

Ambiguity always resolves to rejection. Rejections are filtering decisions,
not errors: they are logged at DEBUG and dropped.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional
from urllib.parse import urlsplit, urlunsplit

from scriptvet.models.assessment import ExtractedReference, ValidatedReference

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = frozenset({"http", "https"})

SHELL_EXPANSION_MARKERS = frozenset("$`{}")
QUOTE_PAREN_CHARS = frozenset("'\"()")


def _rejection_reason(candidate: str) -> Optional[str]:
    """Return why a candidate string cannot be fetched, or None if it can."""
    if not candidate:
        return "empty candidate"

    found = SHELL_EXPANSION_MARKERS.intersection(candidate)
    if found:
        return f"shell expansion marker {''.join(sorted(found))!r}"

    found = QUOTE_PAREN_CHARS.intersection(candidate)
    if found:
        return f"quote/paren character {''.join(sorted(found))!r}"

    if any(ch.isspace() or not ch.isprintable() for ch in candidate):
        return "whitespace or control character"

    return None


def normalize_url(candidate: str) -> Optional[str]:
    """Parse an absolute http(s) URL and return its canonical form.

    Scheme and host are lowercased and the fragment is dropped (it is never
    sent to the server). Path and query are kept verbatim. Returns None for
    anything that is not an absolute http(s) URL with a host.
    """
    try:
        parts = urlsplit(candidate)
        port = parts.port  # raises ValueError on a non-numeric/out-of-range port
    except ValueError:
        return None

    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        return None

    host = parts.hostname
    if not host:
        return None

    netloc = host
    if ":" in host:  # IPv6 literal
        netloc = f"[{host}]"
    if port is not None:
        netloc = f"{netloc}:{port}"
    if parts.username is not None:
        userinfo = parts.username
        if parts.password is not None:
            userinfo = f"{userinfo}:{parts.password}"
        netloc = f"{userinfo}@{netloc}"

    return urlunsplit((scheme, netloc, parts.path or "/", parts.query, ""))


def validate_reference(candidate: str) -> Optional[ValidatedReference]:
    """Validate one candidate string. Returns None if it must not be fetched."""
    reason = _rejection_reason(candidate)
    if reason is not None:
        logger.debug("Rejected reference %r: %s", candidate, reason)
        return None

    url = normalize_url(candidate)
    if url is None:
        logger.debug("Rejected reference %r: not an absolute http(s) URL", candidate)
        return None

    return ValidatedReference(url=url, scheme=url.split(":", 1)[0])


def validate_references(
    references: Iterable[ExtractedReference],
) -> list[ValidatedReference]:
    """Validate extracted references, deduplicated and sorted by URL."""
    accepted: dict[str, ValidatedReference] = {}
    for ref in references:
        validated = validate_reference(ref.raw)
        if validated is not None:
            accepted.setdefault(validated.url, validated)
    return [accepted[url] for url in sorted(accepted)]
