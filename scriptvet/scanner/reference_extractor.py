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

"""Reference extractor: find remote scripts a shell script downloads and runs.

Line-scoped pattern matching over logical lines (backslash continuations
joined, comments stripped). Four idiom families are recognized:

- pipe-to-shell:          curl -fsSL https://x/install.sh | sudo bash
- command substitution:   bash -c "$(curl -fsSL https://x/install.sh)"
- process substitution:   source <(wget -qO- https://x/env.sh)
- download then execute:  curl -o i.sh https://x/i.sh && sh i.sh

The fetch verb and the execution verb must sit in the same logical
command. A bare ``curl URL`` with no execution idiom is not a reference.
Commands inside a bare ``( ... )`` subshell are read as their own command
list, and a substitution counts as executed when it is the command word
or its pipeline feeds a shell.
This is a heuristic, not a shell parser: false positives are narrowed by
the validator, heavily obfuscated invocations are missed.
"""

from __future__ import annotations

import logging
import re
from typing import Iterator, NamedTuple, Optional

from scriptvet.models.assessment import ExtractedReference, ReferenceIdiom

logger = logging.getLogger(__name__)


FETCH_COMMANDS = frozenset({"curl", "wget"})

SHELL_INTERPRETERS = frozenset({"bash", "sh", "zsh", "dash", "ksh"})

# Commands that execute the output of a $(...) or `...` substitution
SUBSTITUTION_EXECUTORS = SHELL_INTERPRETERS | {"eval", "source", "."}

# Commands that execute a <(...) process substitution as a file
PROCESS_SUBSTITUTION_EXECUTORS = SHELL_INTERPRETERS | {"source", "."}

# Words that may precede the real command word
_PREFIX_WORDS = frozenset({
    "exec", "command", "builtin", "nohup", "time",
    "if", "then", "else", "elif", "do", "while", "until", "!", "{",
})

_SUDO_WORDS = frozenset({"sudo", "doas"})
_SUDO_FLAGS_WITH_VALUE = frozenset({"-u", "-g", "-C", "-h", "-p", "-U", "--user", "--group"})

_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")

_WORD = re.compile(
    r"""(?:\\.|'[^']*'|"(?:[^"\\]|\\.)*"|`[^`]*`|[^\s'"`\\])+"""
)

_COMMAND_SEPARATORS = ("&&", "||", ";")
_PIPE_SEPARATORS = ("|&", "|")

# A bare ( ... ) subshell group, possibly behind a keyword; (( is arithmetic
_GROUP_OPEN = re.compile(r"^(?:(?:if|then|else|elif|do|while|until|!|\{)\s+)*\((?!\()")

# Command word standing for "run whatever this substitution prints"
_SUBSTITUTED_COMMAND = "$(...)"

# Commands that run a downloaded file given as an argument
FILE_EXECUTORS = SHELL_INTERPRETERS | {"source", "."}

# Per fetch command: (value-taking output flags, combined short-flag form, --flag= forms)
_OUTPUT_OPTIONS: dict[str, tuple[frozenset[str], re.Pattern, tuple[str, ...]]] = {
    "curl": (frozenset({"-o", "--output"}), re.compile(r"^-[A-Za-z]*o$"), ("--output=",)),
    "wget": (
        frozenset({"-O", "--output-document"}),
        re.compile(r"^-[A-Za-z]*O$"),
        ("--output-document=",),
    ),
}


class LogicalLine(NamedTuple):
    text: str
    start_line: int
    end_line: int


def _strip_comments(line: str) -> str:
    """Strip a trailing shell comment (best-effort quote tracking).

    ``#`` only starts a comment at the beginning of a word, so URL
    fragments like ``https://x/#frag`` survive.
    """
    in_single = False
    in_double = False
    for i, ch in enumerate(line):
        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
        elif ch == "#" and not in_single and not in_double:
            if i == 0 or line[i - 1].isspace():
                return line[:i]
    return line


def iter_logical_lines(text: str) -> Iterator[LogicalLine]:
    """Yield logical lines with backslash continuations joined."""
    buffer: list[str] = []
    start = 1
    for line_num, raw in enumerate(text.splitlines(), start=1):
        if not buffer:
            start = line_num
        line = _strip_comments(raw)
        if line.rstrip().endswith("\\"):
            buffer.append(line.rstrip()[:-1])
            continue
        buffer.append(line)
        yield LogicalLine(" ".join(buffer).strip(), start, line_num)
        buffer = []
    if buffer:
        yield LogicalLine(" ".join(buffer).strip(), start, start + len(buffer) - 1)


def _find_closing_paren(text: str, open_idx: int) -> int:
    """Index of the ')' matching the '(' at open_idx, or -1."""
    depth = 0
    quote: Optional[str] = None
    i = open_idx
    while i < len(text):
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if quote:
            if ch == quote:
                quote = None
        elif ch in "'\"":
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return -1


def _split_top_level(text: str, operators: tuple[str, ...]) -> list[str]:
    """Split on shell operators outside quotes and parentheses."""
    parts: list[str] = []
    buf: list[str] = []
    depth = 0
    quote: Optional[str] = None
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == "\\" and quote != "'":
            buf.append(text[i:i + 2])
            i += 2
            continue
        if quote:
            if ch == quote:
                quote = None
            buf.append(ch)
            i += 1
            continue
        if ch in "'\"`":
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")" and depth:
            depth -= 1
        elif depth == 0:
            op = next((o for o in operators if text.startswith(o, i)), None)
            if op is not None:
                parts.append("".join(buf))
                buf = []
                i += len(op)
                continue
        buf.append(ch)
        i += 1
    parts.append("".join(buf))
    return [p.strip() for p in parts if p.strip()]


def _unquote(word: str) -> str:
    """Strip one pair of enclosing matching quotes."""
    if len(word) >= 2 and word[0] == word[-1] and word[0] in "'\"":
        return word[1:-1]
    return word


def _words(text: str) -> list[str]:
    return _WORD.findall(text)


def _command_word(words: list[str]) -> Optional[tuple[int, str]]:
    """Locate the command actually being run, skipping sudo/env/keywords.

    Returns (index, basename) so ``/usr/bin/curl`` reads as ``curl``. A
    command word that is itself a ``$(...)`` or backtick substitution is
    returned as ``_SUBSTITUTED_COMMAND``.
    """
    i = 0
    while i < len(words):
        word = _unquote(words[i].lstrip("({"))
        if not word or _ASSIGNMENT.match(word):
            i += 1
            continue
        if word.startswith(("$(", "`")):
            return i, _SUBSTITUTED_COMMAND
        base = word.rsplit("/", 1)[-1]
        if base in _SUDO_WORDS:
            i += 1
            while i < len(words) and words[i].startswith("-"):
                flag = words[i]
                i += 1
                if flag in _SUDO_FLAGS_WITH_VALUE and i < len(words):
                    i += 1
            continue
        if base == "env":
            i += 1
            while i < len(words) and (words[i].startswith("-") or _ASSIGNMENT.match(words[i])):
                i += 1
            continue
        if base in _PREFIX_WORDS:
            i += 1
            continue
        return i, base
    return None


def _address_candidates(args: list[str]) -> Iterator[str]:
    """Pick the address-like arguments of a curl/wget invocation.

    Tokens containing ``://`` are candidates, and so are tokens that start
    with a shell expansion: those are handed on so the validator can
    reject them explicitly.
    """
    for arg in args:
        token = _unquote(arg)
        if token.startswith("--url="):
            token = _unquote(token[len("--url="):])
        elif token.startswith("-"):
            continue
        if "://" in token or token.startswith(("$", "`")):
            yield token


def _fetch_candidates(command_text: str) -> Iterator[str]:
    """Candidates from the first curl/wget stage of a (possibly piped) command."""
    for stage in _split_top_level(command_text, _PIPE_SEPARATORS):
        words = _words(stage)
        found = _command_word(words)
        if found and found[1] in FETCH_COMMANDS:
            yield from _address_candidates(words[found[0] + 1:])
            return


def _expand_groups(commands: list[str]) -> list[str]:
    """Replace each bare ``( ... )`` subshell command with the commands inside it.

    A group piped onward, as in ``(curl URL) | bash``, is left whole.
    """
    expanded: list[str] = []
    for command_text in commands:
        match = _GROUP_OPEN.match(command_text)
        close = _find_closing_paren(command_text, match.end() - 1) if match else -1
        if close == -1 or command_text[close + 1:].lstrip().startswith("|"):
            expanded.append(command_text)
            continue
        inner = command_text[match.end():close]
        expanded.extend(_expand_groups(_split_top_level(inner, _COMMAND_SEPARATORS)))
    return expanded


def _feeds_shell(stages: list[str], idx: int) -> bool:
    """True if a pipeline stage after ``idx`` is a shell interpreter."""
    for later in stages[idx + 1:]:
        later_cmd = _command_word(_words(later))
        if later_cmd and later_cmd[1] in SHELL_INTERPRETERS:
            return True
    return False


def _pipe_to_shell(command_text: str) -> Iterator[str]:
    """curl/wget stage followed later in the pipeline by a shell."""
    stages = _split_top_level(command_text, _PIPE_SEPARATORS)
    for idx, stage in enumerate(stages):
        words = _words(stage)
        found = _command_word(words)
        if found and found[1] in FETCH_COMMANDS and _feeds_shell(stages, idx):
            yield from _address_candidates(words[found[0] + 1:])


def _substitutions(command_text: str) -> Iterator[tuple[ReferenceIdiom, str]]:
    """Yield (idiom, inner text) for every $(...), <(...) and `...` span."""
    i = 0
    while i < len(command_text):
        two = command_text[i:i + 2]
        if two in ("$(", "<("):
            close = _find_closing_paren(command_text, i + 1)
            if close == -1:
                return
            idiom = (
                ReferenceIdiom.PROCESS_SUBSTITUTION
                if two == "<("
                else ReferenceIdiom.COMMAND_SUBSTITUTION
            )
            inner = command_text[i + 2:close]
            yield idiom, inner
            yield from _substitutions(inner)
            i = close + 1
            continue
        if command_text[i] == "`":
            close = command_text.find("`", i + 1)
            if close == -1:
                return
            yield ReferenceIdiom.COMMAND_SUBSTITUTION, command_text[i + 1:close]
            i = close + 1
            continue
        i += 1


def _substituted_fetches(command_text: str) -> Iterator[tuple[ReferenceIdiom, str]]:
    """Fetches inside substitutions whose output gets executed.

    The stage's own command word may execute it (``bash -c "$(...)"``, a
    bare ``$(...)`` command) or a later pipeline stage may be a shell
    (``echo "$(...)" | bash``).
    """
    stages = _split_top_level(command_text, _PIPE_SEPARATORS)
    for idx, stage in enumerate(stages):
        found = _command_word(_words(stage))
        if found is None:
            continue
        verb = found[1]
        run_directly = None
        if verb == _SUBSTITUTED_COMMAND:
            offset = [m.start() for m in _WORD.finditer(stage)][found[0]]
            run_directly = next(_substitutions(stage[offset:]), None)
        piped_to_shell = _feeds_shell(stages, idx)
        for idiom, inner in _substitutions(stage):
            if idiom is ReferenceIdiom.PROCESS_SUBSTITUTION:
                executed = verb in PROCESS_SUBSTITUTION_EXECUTORS
            else:
                executed = verb in SUBSTITUTION_EXECUTORS or (idiom, inner) == run_directly
            if not (executed or piped_to_shell):
                continue
            for candidate in _fetch_candidates(inner):
                yield idiom, candidate


def _download_target(command: str, args: list[str]) -> Optional[str]:
    """The file a curl/wget invocation writes to, if any (``-`` is stdout)."""
    flags, combined, long_forms = _OUTPUT_OPTIONS[command]
    for idx, arg in enumerate(args):
        token = _unquote(arg)
        for prefix in long_forms:
            if token.startswith(prefix):
                target = _unquote(token[len(prefix):])
                return target if target != "-" else None
        if (token in flags or combined.match(token)) and idx + 1 < len(args):
            target = _unquote(args[idx + 1])
            return target if target != "-" else None
    return None


def _same_path(left: str, right: str) -> bool:
    return left.removeprefix("./") == right.removeprefix("./")


def _runs_file(command_text: str, path: str) -> bool:
    """True if the command executes ``path`` directly or through a shell."""
    words = _words(command_text)
    found = _command_word(words)
    if found is None:
        return False
    idx, verb = found
    if _same_path(_unquote(words[idx].lstrip("({")), path):
        return True
    if verb in FILE_EXECUTORS:
        return any(_same_path(_unquote(arg), path) for arg in words[idx + 1:])
    return False


def _download_then_execute(commands: list[str]) -> Iterator[str]:
    """curl -o FILE URL && sh FILE, within one logical line."""
    pending: list[tuple[str, list[str]]] = []
    for command_text in commands:
        for path, candidates in pending:
            if _runs_file(command_text, path):
                yield from candidates
        pending = [(p, c) for p, c in pending if not _runs_file(command_text, p)]

        words = _words(command_text)
        found = _command_word(words)
        if found and found[1] in FETCH_COMMANDS:
            args = words[found[0] + 1:]
            target = _download_target(found[1], args)
            if target:
                pending.append((target, list(_address_candidates(args))))


def extract_references(text: str) -> list[ExtractedReference]:
    """Scan script text for remote references in download-then-execute idioms.

    Pure function of the text; never raises. Results are in source order
    and may contain duplicates.
    """
    references: list[ExtractedReference] = []

    for logical in iter_logical_lines(text):
        if not logical.text or not any(cmd in logical.text for cmd in FETCH_COMMANDS):
            continue

        found: list[tuple[ReferenceIdiom, str]] = []
        commands = _expand_groups(_split_top_level(logical.text, _COMMAND_SEPARATORS))
        for command_text in commands:
            found.extend((ReferenceIdiom.PIPE_TO_SHELL, c) for c in _pipe_to_shell(command_text))
            found.extend(_substituted_fetches(command_text))
        found.extend(
            (ReferenceIdiom.DOWNLOAD_THEN_EXECUTE, c) for c in _download_then_execute(commands)
        )

        references.extend(
            ExtractedReference(
                raw=candidate,
                start_line=logical.start_line,
                end_line=logical.end_line,
                idiom=idiom,
            )
            for idiom, candidate in found
        )

    logger.debug("Extracted %d candidate reference(s)", len(references))
    return references
