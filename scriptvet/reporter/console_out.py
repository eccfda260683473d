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

"""Rich terminal output for analysis results.

The default view answers what a person about to paste an install command
wants to know: how risky is it, which remote scripts does it pull in, are
they the ones we expected, and what else does it install.
"""

from __future__ import annotations

from typing import Any, Optional

from rich.console import Console, Group
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from scriptvet.models.assessment import (
    MAX_RISK_SCORE,
    AnalysisReport,
    TrustRecord,
    TrustStatus,
)


def _make_console() -> Console:
    """Console with soft wrap, sized to the live terminal."""
    return Console(soft_wrap=True)


console = _make_console()
err_console = Console(stderr=True, soft_wrap=True)


def _safe_print(*args: Any, **kwargs: Any) -> None:
    kwargs.setdefault("crop", False)
    kwargs.setdefault("overflow", "fold")
    console.print(*args, **kwargs)


# ── Verdict icons ──────────────────────────────────────────────────

ICON_PASS = "[bold green][OK][/bold green]"
ICON_WARN = "[bold yellow][WARN][/bold yellow]"
ICON_DANGER = "[bold red][ALERT][/bold red]"
ICON_INFO = "[bold blue][INFO][/bold blue]"

STATUS_ICONS = {
    TrustStatus.VERIFIED: ICON_PASS,
    TrustStatus.UNVERIFIED: ICON_WARN,
    TrustStatus.ERROR: ICON_DANGER,
}

STATUS_NARRATIVES = {
    TrustStatus.VERIFIED: "matches the hash recorded in the known-script registry",
    TrustStatus.UNVERIFIED: "was fetched, but nobody has vouched for this exact content",
    TrustStatus.ERROR: "could not be fetched, so what it would run is unknown",
}


# ── Helper functions ───────────────────────────────────────────────


def _risk_color(score: int) -> str:
    if score >= 8:
        return "bold red"
    elif score >= 6:
        return "bold dark_orange"
    elif score >= 4:
        return "bold yellow"
    return "bold green"


def _risk_level(score: int) -> str:
    if score >= 8:
        return "CRITICAL"
    elif score >= 6:
        return "HIGH"
    elif score >= 4:
        return "MEDIUM"
    return "LOW"


def _risk_bar(score: int) -> Text:
    """Build a visual risk bar, two cells per point."""
    filled = max(0, min(MAX_RISK_SCORE, score)) * 2
    empty = MAX_RISK_SCORE * 2 - filled
    bar = Text()
    bar.append("#" * filled, style=_risk_color(score).replace("bold ", ""))
    bar.append("-" * empty, style="dim")
    return bar


def print_scan_header(source: str, narrator: str, max_depth: int) -> None:
    """Print the scan header panel."""
    header = Text()
    header.append("SCRIPTVET REMOTE SCRIPT AUDIT\n", style="bold cyan")
    header.append(f"  Script:   {source}\n", style="white")
    header.append(f"  Narrator: {narrator}\n", style="dim")
    header.append(f"  Depth:    up to {max_depth} level(s) of remote scripts", style="dim")

    _safe_print(
        Panel(
            header,
            border_style="white",
            title="[bold]scriptvet scan[/bold]",
            title_align="left",
            expand=True,
            safe_box=True,
        )
    )


def print_risk_score(score: int) -> None:
    """Print risk score with visual bar."""
    color = _risk_color(score)
    plain = color.replace("bold ", "")
    line = Text("  ")
    line.append_text(_risk_bar(score))
    line.append(f"  {score}/{MAX_RISK_SCORE}  {_risk_level(score)}", style=plain)

    _safe_print(
        Panel(
            line,
            border_style=plain,
            title=f"[{color}]Risk Score[/{color}]",
            expand=True,
            safe_box=True,
        )
    )


def print_remote_scripts(records: list[TrustRecord], verbose: bool = False) -> None:
    """Print every remote script the analysis found, with its trust status."""
    if not records:
        _safe_print(
            Panel(
                f"  {ICON_PASS}  This script does not download and execute any remote scripts.",
                border_style="green",
                title="[bold green]Remote Scripts[/bold green]",
                expand=True,
                safe_box=True,
            )
        )
        return

    statuses = {r.status for r in records}
    if TrustStatus.ERROR in statuses:
        border = "red"
    elif TrustStatus.UNVERIFIED in statuses:
        border = "yellow"
    else:
        border = "green"

    table = Table(show_header=True, header_style="bold", expand=True, safe_box=True)
    table.add_column("Status", no_wrap=True)
    table.add_column("URL", overflow="fold")
    if verbose:
        table.add_column("Detail", overflow="fold")

    for record in records:
        row = [f"{STATUS_ICONS[record.status]} {record.status.value}", escape(record.url)]
        if verbose:
            row.append(escape(record.detail or ""))
        table.add_row(*row)

    counts = ", ".join(
        f"{sum(1 for r in records if r.status == status)} {status.value}"
        for status in TrustStatus
        if status in statuses
    )
    lines = [f"  {len(records)} remote script(s): {counts}."]
    for status in TrustStatus:
        if status in statuses and status != TrustStatus.VERIFIED:
            lines.append(f"  [dim]An {status.value} script {STATUS_NARRATIVES[status]}.[/dim]")

    _safe_print(
        Panel(
            Group("\n".join(lines), table),
            border_style=border,
            title=f"[bold {border}]Remote Scripts[/bold {border}]",
            expand=True,
            safe_box=True,
        )
    )


def print_external_binaries(binaries: list[str]) -> None:
    """Print the binaries the script downloads and runs or installs."""
    if not binaries:
        return

    body = (
        f"  {ICON_WARN}  This script installs or runs {len(binaries)} downloaded "
        "program(s). They are not covered by the registry check.\n\n"
    )
    body += "\n".join(f"    - [yellow]{escape(name)}[/yellow]" for name in binaries)

    _safe_print(
        Panel(
            body,
            border_style="yellow",
            title="[bold yellow]External Binaries[/bold yellow]",
            expand=True,
            safe_box=True,
        )
    )


def print_narrative(report_text: str) -> None:
    """Print the narrator's markdown report."""
    _safe_print(
        Panel(
            Markdown(report_text),
            border_style="blue",
            title="[bold blue]Analysis[/bold blue]",
            expand=True,
            safe_box=True,
        )
    )


def print_error(message: str) -> None:
    err_console.print(f"{ICON_DANGER}  [red]{escape(message)}[/red]")


def print_full_report(
    report: AnalysisReport,
    source: str,
    narrator: str,
    max_depth: int,
    verbose: bool = False,
    quiet: bool = False,
) -> None:
    """Print the whole console report.

    ``quiet`` prints only the score and remote-script table.
    """
    if not quiet:
        print_scan_header(source, narrator, max_depth)
    print_risk_score(report.risk_score)
    print_remote_scripts(report.bill_of_materials.remote_scripts, verbose=verbose)
    if quiet:
        return
    print_external_binaries(report.bill_of_materials.external_binaries)
    print_narrative(report.report)


def print_pin_summary(pinned: int, failed: Optional[list[str]] = None) -> None:
    """Report ``scriptvet pin`` progress on stderr, keeping stdout pure YAML."""
    if pinned:
        err_console.print(f"{ICON_INFO}  Pinned {pinned} script(s).")
    for message in failed or []:
        print_error(message)
