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

"""Pydantic models for the remote-reference assessment pipeline.

Python attributes are snake_case; the wire form (JSON report, LLM context)
uses camelCase aliases, e.g. ``riskScore`` and ``billOfMaterials``.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

MIN_RISK_SCORE = 1
MAX_RISK_SCORE = 10


def clamp_risk(score: float | int) -> int:
    """Round and clamp a score onto the 1-10 risk scale."""
    return max(MIN_RISK_SCORE, min(MAX_RISK_SCORE, int(round(score))))


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReferenceIdiom(str, Enum):
    """Download-then-execute idiom families recognized by the extractor."""

    PIPE_TO_SHELL = "pipe_to_shell"
    COMMAND_SUBSTITUTION = "command_substitution"
    PROCESS_SUBSTITUTION = "process_substitution"
    DOWNLOAD_THEN_EXECUTE = "download_then_execute"


class TrustStatus(str, Enum):
    """Outcome of checking a fetched script against the registry."""

    VERIFIED = "verified"
    UNVERIFIED = "unverified"
    ERROR = "error"


class AssessmentState(str, Enum):
    """Per-document stages of the recursive assessment."""

    EXTRACTING = "extracting"
    VALIDATING = "validating"
    FETCHING = "fetching"
    CLASSIFYING = "classifying"
    RECURSING = "recursing"
    SYNTHESIZING = "synthesizing"
    DONE = "done"


class ScriptDocument(BaseModel):
    """A script under analysis: the root script or a fetched sub-script."""

    content: str
    depth: int = Field(default=0, ge=0)
    source_url: Optional[str] = None  # None for the root script

    def child(self, content: str, url: str) -> ScriptDocument:
        return ScriptDocument(content=content, depth=self.depth + 1, source_url=url)


class ExtractedReference(BaseModel):
    """A candidate address found next to a download-then-execute idiom."""

    raw: str
    start_line: int
    end_line: int
    idiom: ReferenceIdiom


class ValidatedReference(BaseModel):
    """A reference confirmed safe to fetch."""

    model_config = ConfigDict(frozen=True)

    url: str
    scheme: str


class FetchOutcome(BaseModel):
    """Result of retrieving one validated reference.

    Exactly one of (content + digest) or error is populated.
    """

    url: str
    content: Optional[str] = None
    digest: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @model_validator(mode="after")
    def _exactly_one_result(self) -> FetchOutcome:
        has_body = self.content is not None and self.digest is not None
        partial_body = (self.content is None) != (self.digest is None)
        if partial_body or has_body == (self.error is not None):
            raise ValueError("FetchOutcome needs either content+digest or error, not both")
        return self

    @property
    def ok(self) -> bool:
        return self.error is None


class TrustRecord(_WireModel):
    """Classification of a fetch outcome against the known-script registry."""

    url: str
    status: TrustStatus
    detail: Optional[str] = None


class NarrativeResult(_WireModel):
    """What the narrative collaborator returns for one script."""

    risk_score: int
    report: str
    external_binaries: list[str] = Field(default_factory=list)

    @field_validator("risk_score", mode="before")
    @classmethod
    def _clamp_score(cls, value: object) -> int:
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise ValueError(f"risk score must be a number, got {value!r}")
        number = float(value)
        if not math.isfinite(number):
            raise ValueError(f"risk score must be finite, got {value!r}")
        return clamp_risk(number)

    @field_validator("report")
    @classmethod
    def _report_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("report narrative is empty")
        return value


class BillOfMaterials(_WireModel):
    """Every remote script and external binary detected for a script."""

    remote_scripts: list[TrustRecord] = Field(default_factory=list)
    external_binaries: list[str] = Field(default_factory=list)


class AnalysisReport(_WireModel):
    """Output of analyzing one script document.

    Only ``riskScore``, ``report`` and ``billOfMaterials`` are serialized;
    the recursion bookkeeping stays on the Python object.
    """

    risk_score: int = Field(ge=MIN_RISK_SCORE, le=MAX_RISK_SCORE)
    report: str
    bill_of_materials: BillOfMaterials = Field(default_factory=BillOfMaterials)

    depth: int = Field(default=0, exclude=True)
    source_url: Optional[str] = Field(default=None, exclude=True)
    truncated: bool = Field(default=False, exclude=True)
    trust_records: list[TrustRecord] = Field(default_factory=list, exclude=True)
    sub_reports: list[SubScriptReport] = Field(default_factory=list, exclude=True)


class SubScriptReport(BaseModel):
    """A direct child of a document: its trust record and, if fetched, its analysis."""

    record: TrustRecord
    report: Optional[AnalysisReport] = None


AnalysisReport.model_rebuild()
