"""Shell command analyzer: structural split and dangerous-syntax detection.

Public API:
    parse_command("git status && git log | head")   -> ["git status", "git log", "head"]
    contains_dangerous_patterns("echo $(whoami)")   -> True

This is not a shell grammar. The split is a best-effort, quote-aware scan used
only for policy evaluation; the literal command string is what gets executed.
"""

import re


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Characters that keep their backslash when escaped outside quotes. Any other
# escaped character is a meaningless escape and the backslash is dropped.
_SIGNIFICANT_ESCAPES = frozenset("|&;\"'\\\n\r \t")

_WHITESPACE = frozenset(" \t")

# Constructs that can run code no matter how the sub-commands are matched
_DANGEROUS_SUBSTRINGS = (
    "$(",   # command substitution
    "`",    # backtick substitution
    "<(",   # process substitution (input)
    ">(",   # process substitution (output)
    "${",   # parameter expansion
    "\n",   # newline is a command separator
    "\r",
)

_CASE_RE = re.compile(r"^case\s")
_COPROC_RE = re.compile(r"^coproc\s")

# -exec family flags (find -exec, git rebase --exec=...). Bounded so that
# words like "executable" or "--executor" do not trip it.
_EXEC_FLAG_RE = re.compile(r"(?:^|\s)(?:-execdir|-exec|-okdir|-ok|--exec)(?=\s|=|$)")


# ---------------------------------------------------------------------------
# Sub-command splitting
# ---------------------------------------------------------------------------

def _is_redirect_ampersand(command: str, i: int) -> bool:
    """True if the '&' at index i belongs to a redirect (2>&1, <&3, &>file)."""
    if i > 0 and command[i - 1] in "<>":
        return True
    return i + 1 < len(command) and command[i + 1] == ">"


def parse_command(command: str) -> list[str]:
    """Split a command into sub-commands on unquoted control operators.

    Operators: &&, ||, |&, |, &, ;, newline, CRLF and bare CR. Quoted regions
    and backslash-escaped operators never split. Outside quotes, whitespace
    runs collapse to one space and meaningless escapes (\\a) lose their
    backslash. Unterminated quotes consume to the end of input.

    Returns trimmed, non-empty sub-commands in order of appearance.
    """
    sub_commands: list[str] = []
    current: list[str] = []
    quote = None  # None, "'" or '"'

    def _flush():
        segment = "".join(current).strip()
        if segment:
            sub_commands.append(segment)
        current.clear()

    i = 0
    n = len(command)
    while i < n:
        ch = command[i]
        nxt = command[i + 1] if i + 1 < n else ""

        if quote == "'":
            current.append(ch)
            if ch == "'":
                quote = None
            i += 1
            continue

        if quote == '"':
            if ch == "\\" and nxt in ('"', "\\"):
                current.append(nxt)
                i += 2
                continue
            current.append(ch)
            if ch == '"':
                quote = None
            i += 1
            continue

        # Unquoted
        if ch == "\\":
            if not nxt:
                current.append(ch)
                i += 1
            elif nxt in _SIGNIFICANT_ESCAPES:
                current.append(ch + nxt)
                i += 2
            else:
                current.append(nxt)
                i += 2
            continue

        if ch in ("'", '"'):
            quote = ch
            current.append(ch)
            i += 1
            continue

        if ch in _WHITESPACE:
            if current and current[-1] != " ":
                current.append(" ")
            i += 1
            continue

        if ch == "\r":
            _flush()
            i += 2 if nxt == "\n" else 1
            continue

        if ch == "\n" or ch == ";":
            _flush()
            i += 1
            continue

        if ch == "&":
            if nxt == "&":
                _flush()
                i += 2
            elif _is_redirect_ampersand(command, i):
                current.append(ch)
                i += 1
            else:
                _flush()
                i += 1
            continue

        if ch == "|":
            _flush()
            i += 2 if nxt in ("|", "&") else 1
            continue

        current.append(ch)
        i += 1

    _flush()
    return sub_commands


# ---------------------------------------------------------------------------
# Dangerous pattern detection
# ---------------------------------------------------------------------------

def contains_dangerous_patterns(command: str) -> bool:
    """Return True if the command uses syntax that can execute code indirectly.

    Runs on the whole command string, not on sub-commands: substitutions and
    group constructs can smuggle execution past per-sub-command matching.
    """
    for marker in _DANGEROUS_SUBSTRINGS:
        if marker in command:
            return True

    stripped = command.lstrip()

    # Subshell and brace group
    if stripped.startswith("(") or stripped.startswith("{"):
        return True

    if _CASE_RE.match(stripped) or _COPROC_RE.match(stripped):
        return True

    if _EXEC_FLAG_RE.search(command):
        return True

    return False
