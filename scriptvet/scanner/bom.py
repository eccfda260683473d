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

"""Bill-of-materials aggregation.

The remote-script list is built from the engine's own trust records, never
from anything a narrator claims.
"""

from __future__ import annotations

from typing import Iterable

from scriptvet.models.assessment import AnalysisReport, BillOfMaterials, TrustRecord


def collect_trust_records(report: AnalysisReport) -> list[TrustRecord]:
    """All trust records in a report tree, root's direct records first.

    Direct records come sorted by URL, followed by descendants in
    depth-first order. A URL seen more than once keeps the record and
    position of its shallowest occurrence.
    """
    walked: list[tuple[int, TrustRecord]] = []

    def walk(node: AnalysisReport, depth: int) -> None:
        walked.extend((depth, record) for record in sorted(node.trust_records, key=lambda r: r.url))
        for sub in sorted(node.sub_reports, key=lambda s: s.record.url):
            if sub.report is not None:
                walk(sub.report, depth + 1)

    walk(report, 0)

    best: dict[str, tuple[int, int]] = {}
    for index, (depth, record) in enumerate(walked):
        seen = best.get(record.url)
        if seen is None or depth < seen[0]:
            best[record.url] = (depth, index)

    keep = sorted(index for _, index in best.values())
    return [walked[index][1] for index in keep]


def build_bill_of_materials(
    trust_records: Iterable[TrustRecord],
    external_binaries: Iterable[str],
) -> BillOfMaterials:
    """Assemble a BillOfMaterials, dropping duplicate URLs and binary names."""
    records: list[TrustRecord] = []
    seen_urls: set[str] = set()
    for record in trust_records:
        if record.url not in seen_urls:
            seen_urls.add(record.url)
            records.append(record)

    binaries: list[str] = []
    for name in external_binaries:
        name = name.strip()
        if name and name not in binaries:
            binaries.append(name)

    return BillOfMaterials(remote_scripts=records, external_binaries=binaries)
