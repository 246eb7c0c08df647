"""Output bounding for executed shell commands.

Public API:
    combined = combine_output(stdout, stderr)
    output, meta = truncate_output(combined)
    meta["total_chars_omitted"]  # exact count of characters cut

Truncation keeps the first and last lines of long output and shortens very
long lines in the middle, so a text-based consumer sees both ends.
"""


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAX_LINE_LENGTH = 1000
LINE_MARKER_ALLOWANCE = 40
HEAD_LINES = 50
TAIL_LINES = 50
GRACE_LINES = 20

STDERR_SEPARATOR = "--- stderr ---"

_LINE_KEEP = (MAX_LINE_LENGTH - LINE_MARKER_ALLOWANCE) // 2


# ---------------------------------------------------------------------------
# Line truncation
# ---------------------------------------------------------------------------

def _truncate_line(line: str) -> tuple[str, int]:
    if len(line) <= MAX_LINE_LENGTH:
        return line, 0
    omitted = len(line) - 2 * _LINE_KEEP
    head = line[:_LINE_KEEP]
    tail = line[-_LINE_KEEP:]
    return f"{head} ... [{omitted} chars omitted] ... {tail}", omitted


def truncate_line(line: str) -> str:
    """Shorten a line longer than MAX_LINE_LENGTH, keeping its head and tail."""
    return _truncate_line(line)[0]


# ---------------------------------------------------------------------------
# Output truncation
# ---------------------------------------------------------------------------

def truncate_output(output: str) -> tuple[str, dict]:
    """Bound output by line count and line length. Returns (output, metadata).

    Output within HEAD_LINES + TAIL_LINES + GRACE_LINES lines only gets
    per-line truncation. Longer output keeps the head and tail lines and
    replaces the middle with a "... [M lines omitted] ..." block.

    metadata["total_chars_omitted"] counts every character removed: the cut
    middle of long lines plus each dropped line and its newline.
    """
    lines = output.split("\n")
    total_lines = len(lines)
    chars_omitted = 0

    def _bounded(selected: list[str]) -> list[str]:
        nonlocal chars_omitted
        result = []
        for line in selected:
            shortened, omitted = _truncate_line(line)
            chars_omitted += omitted
            result.append(shortened)
        return result

    if total_lines <= HEAD_LINES + TAIL_LINES + GRACE_LINES:
        shown = _bounded(lines)
        lines_omitted = 0
    else:
        dropped = lines[HEAD_LINES : total_lines - TAIL_LINES]
        lines_omitted = len(dropped)
        chars_omitted += sum(len(line) + 1 for line in dropped)
        shown = (
            _bounded(lines[:HEAD_LINES])
            + ["", f"... [{lines_omitted} lines omitted] ...", ""]
            + _bounded(lines[total_lines - TAIL_LINES :])
        )

    return "\n".join(shown), {
        "truncation_applied": chars_omitted > 0,
        "total_lines": total_lines,
        "lines_omitted": lines_omitted,
        "total_chars_omitted": chars_omitted,
    }


# ---------------------------------------------------------------------------
# Stream combination
# ---------------------------------------------------------------------------

def combine_output(stdout: str, stderr: str) -> str:
    """Join trimmed stdout and stderr. No truncation happens here."""
    out = (stdout or "").strip()
    err = (stderr or "").strip()
    if out and err:
        return f"{out}\n{STDERR_SEPARATOR}\n{err}"
    return out or err
