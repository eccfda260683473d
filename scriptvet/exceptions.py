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

"""Exception hierarchy for scriptvet.

Per-reference problems (rejected candidates, failed fetches) are never
raised; they are recorded as data. Only the errors below cross module
boundaries.
"""

from __future__ import annotations


class ScriptVetError(Exception):
    """Base exception for all scriptvet errors."""


class ScriptInputError(ScriptVetError):
    """The script handed to the analyzer is missing, unreadable, or empty."""


class RegistryError(ScriptVetError):
    """The known-script registry file could not be loaded."""


class ProviderError(ScriptVetError):
    """An LLM provider call failed or returned something that is not JSON."""


class SynthesisError(ScriptVetError):
    """The narrative collaborator could not produce a well-formed report.

    This is the only failure that aborts an analysis.
    """


class ConfigError(ScriptVetError):
    """Engine settings from the config file, environment or flags are out of bounds."""
