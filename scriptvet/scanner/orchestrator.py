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

"""Recursive assessment: extract, validate, fetch, classify, recurse, synthesize.

Every document (the root script or a fetched sub-script) goes through the
same sequence of AssessmentState stages. Fetched sub-scripts are assessed
one level deeper, concurrently with their siblings, until the configured
maximum depth; anything past it gets a synthetic maximum-risk report.

Fetch failures never abort an analysis; they become ``error`` trust records.
A narrator failure (SynthesisError) cancels in-flight sibling work and
propagates to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Iterable, Optional

import httpx

from scriptvet.config import EngineSettings
from scriptvet.exceptions import ScriptInputError
from scriptvet.models.assessment import (
    MAX_RISK_SCORE,
    AnalysisReport,
    AssessmentState,
    FetchOutcome,
    ScriptDocument,
    SubScriptReport,
    TrustRecord,
    TrustStatus,
    clamp_risk,
)
from scriptvet.models.registry import KnownScriptRegistry, get_registry
from scriptvet.scanner.bom import build_bill_of_materials, collect_trust_records
from scriptvet.scanner.content_fetcher import ContentFetcher
from scriptvet.scanner.narrator import Narrator, create_narrator
from scriptvet.scanner.reference_extractor import extract_references
from scriptvet.scanner.reference_validator import validate_references
from scriptvet.scanner.trust_classifier import classify_outcome

logger = logging.getLogger(__name__)

UNVERIFIED_RISK_FLOOR = 6
ERROR_RISK_FLOOR = 7
VERIFICATION_EXCERPT_CHARS = 2000


class _Run:
    """State shared by every document of one top-level analysis.

    Holds the fetcher and one fetch task per URL, so a URL referenced from
    several places in the tree is downloaded once.
    """

    def __init__(self, fetcher: ContentFetcher) -> None:
        self.fetcher = fetcher
        self._fetches: dict[str, asyncio.Task] = {}

    def fetch(self, url: str) -> Awaitable[FetchOutcome]:
        task = self._fetches.get(url)
        if task is None:
            task = asyncio.ensure_future(self.fetcher.fetch(url))
            self._fetches[url] = task
        else:
            logger.debug("Reusing fetch of %s", url)
        return task

    async def close(self) -> None:
        pending = [t for t in self._fetches.values() if not t.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)


async def _gather_or_cancel(aws: Iterable[Awaitable[Any]]) -> list[Any]:
    """Like asyncio.gather, but the first failure cancels the remaining tasks."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return list(await asyncio.gather(*tasks))
    except Exception:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def _enter(doc: ScriptDocument, state: AssessmentState) -> None:
    logger.debug("[depth %d] %s: %s", doc.depth, doc.source_url or "<root>", state.value)


def truncated_report(doc: ScriptDocument, max_depth: int) -> AnalysisReport:
    """Synthetic report for a sub-script past the maximum recursion depth."""
    return AnalysisReport(
        risk_score=MAX_RISK_SCORE,
        report=(
            f"Depth limit reached: {doc.source_url} was not analyzed because it is "
            f"nested deeper than the maximum recursion depth of {max_depth}. "
            "Deep or cyclic chains of remote scripts are treated as maximum risk."
        ),
        depth=doc.depth,
        source_url=doc.source_url,
        truncated=True,
    )


def _quote(text: str) -> str:
    return "\n".join(f"> {line}" if line else ">" for line in text.splitlines())


def render_provenance(subs: list[SubScriptReport]) -> str:
    """Markdown section describing each direct remote script."""
    lines = ["## Remote scripts", ""]
    for sub in subs:
        record = sub.record
        lines.append(f"### {record.url}")
        lines.append("")
        status = record.status.value
        lines.append(f"- Status: {status}" + (f" ({record.detail})" if record.detail else ""))
        if sub.report is not None:
            lines.append(f"- Risk score: {sub.report.risk_score}/{MAX_RISK_SCORE}")
            if sub.report.truncated:
                lines.append("- Not analyzed: depth limit reached")
            lines.append("")
            lines.append(_quote(sub.report.report))
        lines.append("")
    return "\n".join(lines).rstrip("\n")


class RecursiveAssessor:
    """Analyzes a script and every remote script it executes, recursively."""

    def __init__(
        self,
        narrator: Narrator,
        registry: Optional[KnownScriptRegistry] = None,
        settings: Optional[EngineSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.narrator = narrator
        self.settings = settings or EngineSettings()
        self.registry = registry if registry is not None else get_registry(self.settings.registry_path)
        self.transport = transport

    async def analyze(self, script_content: str) -> AnalysisReport:
        """Analyze a root script.

        Raises:
            ScriptInputError: The script is empty.
            SynthesisError: A narrator could not produce a result for some document.
        """
        if not script_content.strip():
            raise ScriptInputError("Script content is empty")

        fetcher = ContentFetcher(
            timeout=self.settings.fetch_timeout,
            max_concurrent=self.settings.max_concurrent_fetches,
            max_bytes=self.settings.max_response_bytes,
            transport=self.transport,
        )
        async with fetcher:
            run = _Run(fetcher)
            try:
                report = await self._assess(ScriptDocument(content=script_content), run)
            finally:
                await run.close()

        logger.info(
            "Analysis complete: risk %d/%d, %d remote script(s)",
            report.risk_score,
            MAX_RISK_SCORE,
            len(report.bill_of_materials.remote_scripts),
        )
        return report

    async def _assess(self, doc: ScriptDocument, run: _Run) -> AnalysisReport:
        _enter(doc, AssessmentState.EXTRACTING)
        references = extract_references(doc.content)

        _enter(doc, AssessmentState.VALIDATING)
        validated = validate_references(references)

        _enter(doc, AssessmentState.FETCHING)
        outcomes = await asyncio.gather(*(run.fetch(v.url) for v in validated))
        outcomes = sorted(outcomes, key=lambda o: o.url)

        _enter(doc, AssessmentState.CLASSIFYING)
        records = [classify_outcome(o, self.registry) for o in outcomes]

        _enter(doc, AssessmentState.RECURSING)
        children = await self._recurse(doc, outcomes, run)
        subs = [SubScriptReport(record=r, report=c) for r, c in zip(records, children)]

        _enter(doc, AssessmentState.SYNTHESIZING)
        report = await self._synthesize(doc, outcomes, subs)

        _enter(doc, AssessmentState.DONE)
        return report

    async def _recurse(
        self,
        doc: ScriptDocument,
        outcomes: list[FetchOutcome],
        run: _Run,
    ) -> list[Optional[AnalysisReport]]:
        """Assess each fetched sub-script; ``None`` where the fetch failed."""
        pending: dict[int, Awaitable[AnalysisReport]] = {}
        for index, outcome in enumerate(outcomes):
            if outcome.ok:
                child = doc.child(outcome.content or "", outcome.url)
                pending[index] = self._assess_child(child, run)

        results = await _gather_or_cancel(pending.values())
        by_index = dict(zip(pending.keys(), results))
        return [by_index.get(i) for i in range(len(outcomes))]

    async def _assess_child(self, child: ScriptDocument, run: _Run) -> AnalysisReport:
        if child.depth > self.settings.max_depth:
            logger.info(
                "Depth limit %d reached at %s; not descending further",
                self.settings.max_depth,
                child.source_url,
            )
            return truncated_report(child, self.settings.max_depth)
        return await self._assess(child, run)

    async def _synthesize(
        self,
        doc: ScriptDocument,
        outcomes: list[FetchOutcome],
        subs: list[SubScriptReport],
    ) -> AnalysisReport:
        results = [verification_entry(o, s) for o, s in zip(outcomes, subs)]
        narrative = await self.narrator.narrate(doc.content, results)

        statuses = {s.record.status for s in subs}
        signals = [narrative.risk_score]
        signals.extend(s.report.risk_score for s in subs if s.report is not None)
        if TrustStatus.UNVERIFIED in statuses:
            signals.append(UNVERIFIED_RISK_FLOOR)
        if TrustStatus.ERROR in statuses:
            signals.append(ERROR_RISK_FLOOR)
        score = clamp_risk(max(signals))

        text = narrative.report.rstrip("\n")
        if subs:
            text = f"{text}\n\n{render_provenance(subs)}"

        report = AnalysisReport(
            risk_score=score,
            report=text,
            depth=doc.depth,
            source_url=doc.source_url,
            trust_records=[s.record for s in subs],
            sub_reports=subs,
        )

        binaries = list(narrative.external_binaries)
        for sub in subs:
            if sub.report is not None:
                binaries.extend(sub.report.bill_of_materials.external_binaries)
        report.bill_of_materials = build_bill_of_materials(collect_trust_records(report), binaries)
        return report


def verification_entry(outcome: FetchOutcome, sub: SubScriptReport) -> dict[str, Any]:
    """What the narrator is told about one direct remote script."""
    record: TrustRecord = sub.record
    entry: dict[str, Any] = {
        "url": record.url,
        "status": record.status.value,
        "truncated": bool(sub.report and sub.report.truncated),
    }
    if record.detail:
        entry["detail"] = record.detail
    if outcome.digest:
        entry["digest"] = outcome.digest
    if sub.report is not None:
        entry["riskScore"] = sub.report.risk_score
    if outcome.content is not None:
        entry["excerpt"] = outcome.content[:VERIFICATION_EXCERPT_CHARS]
    return entry


def analyze_script(
    script_content: str,
    *,
    narrator: Optional[Narrator] = None,
    registry: Optional[KnownScriptRegistry] = None,
    settings: Optional[EngineSettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AnalysisReport:
    """Blocking entry point: analyze ``script_content`` in a fresh event loop."""
    assessor = RecursiveAssessor(
        narrator or create_narrator(),
        registry=registry,
        settings=settings,
        transport=transport,
    )
    return asyncio.run(assessor.analyze(script_content))
