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

"""Narrative collaborators: turn a script plus its verification results into a
risk score and a markdown report.

Two implementations share the Narrator contract. LLMNarrator delegates to a
configured LLM provider; HeuristicNarrator scores the regex findings from
shell_analyzer and needs no network or API key.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from pydantic import ValidationError

from scriptvet.exceptions import ProviderError, SynthesisError
from scriptvet.models.assessment import MIN_RISK_SCORE, NarrativeResult, clamp_risk
from scriptvet.models.findings import SEVERITY_WEIGHTS, FindingSeverity, ShellFinding
from scriptvet.scanner.llm_judge import LLMProvider, build_narrative_prompt, detect_provider
from scriptvet.scanner.shell_analyzer import detect_downloaded_binaries, scan_shell_text

logger = logging.getLogger(__name__)

_SEVERITY_ORDER = [
    FindingSeverity.CRITICAL,
    FindingSeverity.HIGH,
    FindingSeverity.MEDIUM,
    FindingSeverity.LOW,
]


class Narrator(ABC):
    """Produces the risk score and narrative for one script."""

    name = "narrator"

    @abstractmethod
    async def narrate(
        self,
        script_content: str,
        verification_results: list[dict[str, Any]],
    ) -> NarrativeResult:
        """Judge one script.

        Raises:
            SynthesisError: No well-formed result could be produced.
        """
        ...


def score_findings(findings: list[ShellFinding]) -> int:
    """1 plus the weight of each distinct pattern at its worst severity, clamped."""
    worst: dict[str, int] = {}
    for finding in findings:
        weight = SEVERITY_WEIGHTS[finding.severity]
        worst[finding.pattern] = max(weight, worst.get(finding.pattern, 0))
    return clamp_risk(MIN_RISK_SCORE + sum(worst.values()))


def render_heuristic_report(findings: list[ShellFinding], binaries: list[str]) -> str:
    if not findings:
        lines = ["Heuristic review found no risky shell patterns in this script."]
    else:
        touched = len({f.line for f in findings})
        lines = [
            f"Heuristic review found {len(findings)} risky pattern(s) "
            f"on {touched} line(s).",
            "",
            "### Findings",
            "",
        ]
        ordered = sorted(findings, key=lambda f: (_SEVERITY_ORDER.index(f.severity), f.line))
        for finding in ordered:
            lines.append(
                f"- **{finding.severity.value.upper()}** line {finding.line} "
                f"`{finding.pattern}`: {finding.message}"
            )

    if binaries:
        lines.extend(["", "### Downloaded binaries", ""])
        lines.extend(f"- `{name}`" for name in binaries)

    return "\n".join(lines)


class HeuristicNarrator(Narrator):
    """Deterministic narrator used when no LLM provider is configured."""

    name = "heuristic"

    async def narrate(
        self,
        script_content: str,
        verification_results: list[dict[str, Any]],
    ) -> NarrativeResult:
        findings = scan_shell_text(script_content)
        binaries = detect_downloaded_binaries(script_content)
        logger.debug("Heuristic narrator: %d findings, %d binaries", len(findings), len(binaries))
        return NarrativeResult(
            risk_score=score_findings(findings),
            report=render_heuristic_report(findings, binaries),
            external_binaries=binaries,
        )


def parse_narrative(raw: dict[str, Any]) -> NarrativeResult:
    """Validate a provider's JSON object into a NarrativeResult.

    Accepts camelCase or snake_case keys, and external binaries either under
    ``billOfMaterials`` or at the top level.

    Raises:
        SynthesisError: The object is missing a score or report, or they are malformed.
    """
    bom = raw.get("billOfMaterials", raw.get("bill_of_materials"))
    binaries: Any = None
    if isinstance(bom, dict):
        binaries = bom.get("externalBinaries", bom.get("external_binaries"))
    if binaries is None:
        binaries = raw.get("externalBinaries", raw.get("external_binaries", []))
    if not isinstance(binaries, list):
        binaries = []

    try:
        return NarrativeResult(
            risk_score=raw.get("riskScore", raw.get("risk_score")),
            report=raw.get("report"),
            external_binaries=[b for b in binaries if isinstance(b, str)],
        )
    except ValidationError as e:
        raise SynthesisError(f"Malformed narrative from model: {e}") from e


class LLMNarrator(Narrator):
    """Narrator backed by an LLM provider."""

    def __init__(self, provider: LLMProvider) -> None:
        self.provider = provider
        self.name = provider.name

    async def narrate(
        self,
        script_content: str,
        verification_results: list[dict[str, Any]],
    ) -> NarrativeResult:
        prompt = build_narrative_prompt(script_content, verification_results)
        try:
            raw = await self.provider.analyze(prompt)
        except ProviderError as e:
            raise SynthesisError(f"{self.name} narrator failed: {e}") from e
        return parse_narrative(raw)


def create_narrator(use_llm: bool = True, provider: Optional[LLMProvider] = None) -> Narrator:
    """Pick a narrator: the given provider, an auto-detected one, or heuristics."""
    if provider is None and use_llm:
        provider = detect_provider()
    if provider is None:
        return HeuristicNarrator()
    return LLMNarrator(provider)
