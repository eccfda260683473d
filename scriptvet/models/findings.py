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

"""Pydantic models for heuristic shell findings."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel


class FindingSeverity(str, Enum):
    """How much a finding contributes to the heuristic risk score."""

    CRITICAL = "critical"  # remote code execution, reverse shells
    HIGH = "high"  # privilege changes, obfuscated payloads
    MEDIUM = "medium"  # secrets, destructive filesystem operations
    LOW = "low"  # informational


SEVERITY_WEIGHTS: dict[FindingSeverity, int] = {
    FindingSeverity.CRITICAL: 4,
    FindingSeverity.HIGH: 2,
    FindingSeverity.MEDIUM: 1,
    FindingSeverity.LOW: 0,
}


class ShellFinding(BaseModel):
    """A single pattern match in a shell script."""

    line: int
    pattern: str  # e.g., "pipe_to_shell", "sudo"
    severity: FindingSeverity
    message: str
    source_line: str = ""
