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

"""Shell script analyzer: regex-based risk findings for the heuristic narrator.

Implements pattern-based detection for:
- Remote code execution (curl|sh, eval "$(curl ...)", source <(curl ...))
- Obfuscated payloads (base64 decode piped to a shell or interpreter)
- Reverse shells (nc -e, /dev/tcp)
- TLS verification disabled on downloads
- Privilege changes (sudo, setuid bits, world-writable files)
- Destructive deletes and persistence (crontab, shell rc files, systemd)
- Secret/env variable access ($API_KEY, $TOKEN, etc.)
- Downloaded binaries that are later made executable or installed
"""

from __future__ import annotations

import logging
import re
from pathlib import PurePosixPath

from scriptvet.models.findings import FindingSeverity, ShellFinding
from scriptvet.scanner.reference_extractor import iter_logical_lines

logger = logging.getLogger(__name__)


# ── Risk patterns: (pattern, name, severity, message) ──

SHELL_RISK_PATTERNS: list[tuple[re.Pattern, str, FindingSeverity, str]] = [
    (
        re.compile(r"""\b(curl|wget)\b[^|]*\|\s*(sudo\s+(-\S+\s+)*)?(ba|z|da|k)?sh\b""", re.IGNORECASE),
        "pipe_to_shell",
        FindingSeverity.CRITICAL,
        "Pipe-to-shell: downloaded content is executed without being saved or checked",
    ),
    (
        re.compile(r"""\b(bash|sh|zsh|eval)\b.*(\$\(|`)\s*(curl|wget)\b"""),
        "substitution_exec",
        FindingSeverity.CRITICAL,
        "Command substitution executes the output of curl/wget",
    ),
    (
        re.compile(r"""(\bsource|(^|[\s;&|])\.)\s+<\(\s*(curl|wget)\b"""),
        "source_remote",
        FindingSeverity.CRITICAL,
        "Remote script sourced into the current shell via process substitution",
    ),
    (
        re.compile(r"""\b(curl|wget)\b.*\s-[A-Za-z]*[oO]\s+\S+.*(&&|;)\s*(sudo\s+)?(ba|z)?sh\s"""),
        "download_and_execute",
        FindingSeverity.CRITICAL,
        "Download-and-execute: a fetched file is run immediately after download",
    ),
    (
        re.compile(r"""base64\s+(-d|--decode)\b.*\|\s*(ba|z)?sh\b""", re.IGNORECASE),
        "encoded_payload",
        FindingSeverity.CRITICAL,
        "Encoded payload execution: base64 decode piped to shell",
    ),
    (
        re.compile(r"""base64\s+(-d|--decode)\b.*\|\s*(python[23]?|perl|ruby|node)\b""", re.IGNORECASE),
        "encoded_payload",
        FindingSeverity.CRITICAL,
        "Encoded payload execution: base64 decode piped to an interpreter",
    ),
    (
        re.compile(r"""\b(nc|ncat|netcat)\b.*\s-[a-z]*[ec]\b""", re.IGNORECASE),
        "reverse_shell",
        FindingSeverity.CRITICAL,
        "Netcat with exec flag: potential reverse shell",
    ),
    (
        re.compile(r"""/dev/tcp/"""),
        "reverse_shell",
        FindingSeverity.CRITICAL,
        "Bash /dev/tcp raw connection, common in reverse shells",
    ),
    (
        re.compile(r"""\beval\s+["'\$]"""),
        "eval_dynamic",
        FindingSeverity.HIGH,
        "Dynamic code execution via eval",
    ),
    (
        re.compile(r"""\bcurl\b.*\s(-k|--insecure)\b|\bwget\b.*\s--no-check-certificate\b"""),
        "insecure_tls",
        FindingSeverity.HIGH,
        "TLS certificate verification disabled for a download",
    ),
    (
        re.compile(r"""\bchmod\s+([ugoa]*\+s|[2467][0-7]{3})\b"""),
        "setuid",
        FindingSeverity.HIGH,
        "setuid/setgid bit set on a file",
    ),
    (
        re.compile(r"""\brm\s+-[A-Za-z]*r[A-Za-z]*\s+(-\S+\s+)*("?/"?(\s|$)|"?/\*|~/?(\s|$)|"?\$\{?\w+\}?"?(\s|$))"""),
        "destructive_delete",
        FindingSeverity.HIGH,
        "Recursive delete of /, the home directory, or an unchecked variable",
    ),
    (
        re.compile(r"""\bsudo\b"""),
        "sudo",
        FindingSeverity.MEDIUM,
        "Runs commands as root via sudo",
    ),
    (
        re.compile(r"""\bchmod\s+(-R\s+)?(777|666|a\+rwx|o\+w)\b"""),
        "world_writable",
        FindingSeverity.MEDIUM,
        "Overly permissive file permissions (world-writable)",
    ),
    (
        re.compile(r"""\b(curl|wget)\b.*\shttp://"""),
        "plain_http",
        FindingSeverity.MEDIUM,
        "Download over plain HTTP: content can be altered in transit",
    ),
    (
        re.compile(r"""\bcrontab\b|>>?\s*~?/?\S*\.(bashrc|bash_profile|profile|zshrc)\b|\bsystemctl\s+enable\b"""),
        "persistence",
        FindingSeverity.MEDIUM,
        "Persistence: modifies cron, shell startup files, or enables a service",
    ),
    (
        re.compile(r"""\bpython[23]?\s+-c\s+['"]|\bperl\s+-e\s+['"]|\bruby\s+-e\s+['"]|\bnode\s+-e\s+['"]"""),
        "inline_interpreter",
        FindingSeverity.MEDIUM,
        "Inline interpreter code execution",
    ),
    (
        re.compile(r"""\bprintenv\b|\benv\b\s*\||\bcompgen\s+-v\b"""),
        "env_dump",
        FindingSeverity.LOW,
        "Dumps environment variables",
    ),
]


# ── Secret / env var access ──

SECRET_ENV_PATTERN = re.compile(
    r"""\$\{?"""
    r"""(\w*(API_KEY|SECRET|TOKEN|PASSWORD|CREDENTIAL|PRIVATE_KEY)\w*|"""
    r"""AWS_ACCESS_KEY_ID|AWS_SESSION_TOKEN|DATABASE_URL|GOOGLE_APPLICATION_CREDENTIALS)"""
    r"""\}?""",
    re.IGNORECASE,
)


# ── Downloaded binaries ──

_DOWNLOAD_TARGET = re.compile(
    r"""\b(?:curl\b.*?(?:\s-[A-Za-z]*o|\s--output)|wget\b.*?(?:\s-[A-Za-z]*O|\s--output-document))"""
    r"""[\s=]+["']?([^\s"';|&]+)"""
)

_SCRIPT_SUFFIXES = {".sh", ".bash", ".zsh", ".ps1", ".py", ".txt", ".json", ".yaml", ".yml"}
_ARCHIVE_SUFFIXES = {".gz", ".tgz", ".zip", ".xz", ".bz2", ".tar", ".deb", ".rpm"}


def scan_shell_text(content: str) -> list[ShellFinding]:
    """Run the risk patterns over every logical line of a script."""
    findings: list[ShellFinding] = []
    seen: set[tuple[int, str]] = set()

    for logical in iter_logical_lines(content):
        line = logical.text
        if not line:
            continue

        for pattern, name, severity, message in SHELL_RISK_PATTERNS:
            if (logical.start_line, name) in seen or not pattern.search(line):
                continue
            seen.add((logical.start_line, name))
            findings.append(
                ShellFinding(
                    line=logical.start_line,
                    pattern=name,
                    severity=severity,
                    message=message,
                    source_line=line,
                )
            )

        secret_match = SECRET_ENV_PATTERN.search(line)
        if secret_match:
            findings.append(
                ShellFinding(
                    line=logical.start_line,
                    pattern="secret_access",
                    severity=FindingSeverity.MEDIUM,
                    message=f"Secret/credential read from environment: ${secret_match.group(1)}",
                    source_line=line,
                )
            )

    return findings


def _is_activated(target: str, texts: list[str]) -> bool:
    """True if a downloaded file is made executable, installed, or run."""
    name = re.escape(PurePosixPath(target).name)
    path = re.escape(target)
    activation = re.compile(
        rf"""\bchmod\s+(\S+\s+)*["']?\S*\b{name}["']?(\s|$)"""
        rf"""|\b(install|mv|cp)\b.*\b{name}\b.*\s/(usr/(local/)?)?s?bin\b"""
        rf"""|(^|[;&|])\s*(sudo\s+)?(\./)?{path}(\s|$)"""
    )
    return any(activation.search(text) for text in texts)


def detect_downloaded_binaries(content: str) -> list[str]:
    """Names of files downloaded by curl/wget that are then executed or installed.

    Scripts (.sh etc.) and archives are not binaries and are skipped.
    """
    binaries: list[str] = []
    lines = list(iter_logical_lines(content))
    for logical in lines:
        for match in _DOWNLOAD_TARGET.finditer(logical.text):
            target = match.group(1)
            suffix = PurePosixPath(target).suffix.lower()
            if suffix in _SCRIPT_SUFFIXES or suffix in _ARCHIVE_SUFFIXES or target == "-":
                continue
            name = PurePosixPath(target).name
            if not name or name in binaries:
                continue
            rest = [logical.text[match.end():]]
            rest.extend(other.text for other in lines if other is not logical)
            if _is_activated(target, rest):
                binaries.append(name)
    return binaries
