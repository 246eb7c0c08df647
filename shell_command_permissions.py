"""Shell command permissions: allow/deny pattern lists and the auto-run decision.

Public API:
    permissions = ShellCommandPermissions(store)
    permissions.add_allowlist_patterns("git log *", "git status")
    result = permissions.check_command("git log --oneline && git status")
    result.allowed, result.reason, result.matched_pattern

Decision precedence for check_command:
    1. denied       - any sub-command matches any deny-list pattern
    2. dangerous    - the whole command contains dangerous syntax
    3. allowed      - every sub-command matches some allow-list pattern
    4. not-allowed  - everything else (including an empty allow-list)

Pattern syntax: literal text plus '*' wildcards. A trailing " *" matches the
base command with or without arguments; any other '*' matches one or more
characters. Matching is anchored at both ends and case-sensitive.
"""

import json
import re
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from shell_command_analyzer import contains_dangerous_patterns, parse_command


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ALLOWLIST_PREFERENCE = "shell.commandAllowlist"
DENYLIST_PREFERENCE = "shell.commandDenylist"

REASON_DENIED = "denied"
REASON_DANGEROUS = "dangerous"
REASON_NOT_ALLOWED = "not-allowed"

DEFAULT_DENYLIST = (
    # Shell re-invocation
    "bash -c *",
    "sh -c *",
    "zsh -c *",
    "dash -c *",
    "ksh -c *",
    "fish -c *",
    # Interpreter one-liners
    "python -c *",
    "python3 -c *",
    "node -e *",
    "node --eval *",
    "perl -e *",
    "ruby -e *",
    "php -r *",
    # Privilege escalation
    "sudo *",
    "su *",
    "doas *",
    # Destructive operations
    "rm -rf /",
    "rm -rf ~",
    "mkfs *",
    "dd *",
    # Indirect execution wrappers
    "xargs *",
    "nohup *",
    "timeout *",
    "nice *",
    "ssh *",
    "watch *",
    "eval *",
    "exec *",
    "env *",
    "command *",
    "builtin *",
)


class PatternValidationError(ValueError):
    """A pattern violates one of the allow/deny-list syntax rules."""


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CommandCheckResult:
    allowed: bool
    reason: Optional[str] = None  # "denied" | "dangerous" | "not-allowed"
    matched_pattern: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"allowed": self.allowed}
        if self.reason is not None:
            data["reason"] = self.reason
        if self.matched_pattern is not None:
            data["matchedPattern"] = self.matched_pattern
        return data


@dataclass(frozen=True)
class CommandAnalysis:
    """Informational breakdown used to drive confirmation prompts."""
    sub_commands: list[str]
    has_dangerous_patterns: bool
    unallowed_sub_commands: list[str]


@dataclass(frozen=True)
class PatternSuggestion:
    patterns: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Pattern validation and matching
# ---------------------------------------------------------------------------

def validate_pattern(pattern: str) -> str:
    """Return the trimmed pattern or raise PatternValidationError."""
    trimmed = pattern.strip() if isinstance(pattern, str) else ""
    if not trimmed:
        raise PatternValidationError("Pattern cannot be empty or whitespace-only")

    if trimmed == "*":
        raise PatternValidationError(
            "Pattern '*' is too permissive: it would match every command"
        )

    for i, ch in enumerate(trimmed):
        if ch == "*" and i > 0 and trimmed[i - 1] != " ":
            raise PatternValidationError(
                f"Wildcard '*' at position {i} in '{trimmed}' must be preceded by a space "
                "(use 'cmd *' rather than 'cmd*')"
            )

    return trimmed


def _compile_pattern(pattern: str) -> re.Pattern:
    """Translate a pattern into an anchored regular expression."""
    body = pattern
    suffix = ""
    if body.endswith(" *"):
        # Trailing wildcard: arguments are optional
        body = body[:-2]
        suffix = "(?: .*)?"

    literal_parts = [re.escape(part) for part in body.split("*")]
    return re.compile(".+".join(literal_parts) + suffix, re.DOTALL)


def matches_pattern(sub_command: str, pattern: str) -> bool:
    """True if the whole sub-command matches the pattern."""
    return _compile_pattern(pattern).fullmatch(sub_command) is not None


# ---------------------------------------------------------------------------
# Pattern suggestions
# ---------------------------------------------------------------------------

_PREFIX_STOP_RE = re.compile(r"^-|[\"'$`\\*=/]")

_MAX_PREFIX_WORDS = 2


def _candidate_patterns(sub_command: str) -> list[str]:
    """Candidates for one sub-command, most specific first."""
    candidates = [sub_command]

    prefix: list[str] = []
    for word in sub_command.split(" "):
        if len(prefix) == _MAX_PREFIX_WORDS or _PREFIX_STOP_RE.search(word):
            break
        prefix.append(word)

    for size in range(len(prefix), 0, -1):
        candidates.append(" ".join(prefix[:size]) + " *")

    valid = []
    for candidate in candidates:
        try:
            candidate = validate_pattern(candidate)
        except PatternValidationError:
            continue
        if candidate not in valid:
            valid.append(candidate)
    return valid


def generate_command_patterns(sub_commands: list[str]) -> list[PatternSuggestion]:
    """Suggest allow/deny patterns covering the given sub-commands.

    Suggestion N holds, for each sub-command, its level-N candidate (exact,
    then two-word prefix, then one-word prefix), falling back to the most
    general candidate a sub-command has.
    """
    per_command = [_candidate_patterns(sub) for sub in sub_commands]
    per_command = [c for c in per_command if c]
    if not per_command:
        return []

    suggestions: list[PatternSuggestion] = []
    seen: set[tuple[str, ...]] = set()
    levels = max(len(c) for c in per_command)
    for level in range(levels):
        patterns: list[str] = []
        for candidates in per_command:
            pattern = candidates[min(level, len(candidates) - 1)]
            if pattern not in patterns:
                patterns.append(pattern)
        key = tuple(patterns)
        if key not in seen:
            seen.add(key)
            suggestions.append(PatternSuggestion(patterns=patterns))
    return suggestions


def flatten_suggestions(suggestions: list[PatternSuggestion]) -> list[PatternSuggestion]:
    """One single-pattern suggestion per distinct pattern, order preserved."""
    flat: list[PatternSuggestion] = []
    seen: set[str] = set()
    for suggestion in suggestions:
        for pattern in suggestion.patterns:
            if pattern not in seen:
                seen.add(pattern)
                flat.append(PatternSuggestion(patterns=[pattern]))
    return flat


# ---------------------------------------------------------------------------
# Preference storage
# ---------------------------------------------------------------------------

class PreferenceStore(ABC):
    """Key-value store holding the pattern lists."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    def update(self, key: str, value: Any) -> None:
        ...


class InMemoryPreferenceStore(PreferenceStore):

    def __init__(self, initial: Optional[dict[str, Any]] = None):
        self._values: dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def update(self, key: str, value: Any) -> None:
        self._values[key] = value


class JsonPreferenceStore(PreferenceStore):
    """Preferences persisted as a single JSON object on disk."""

    def __init__(self, path: str):
        self._path = Path(path)

    def _load(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            print(f"WARNING: Preferences file {self._path} unreadable: {e}", file=sys.stderr)
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._load().get(key, default)

    def update(self, key: str, value: Any) -> None:
        data = self._load()
        data[key] = value
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "w") as f:
            json.dump(data, f, indent=2)


# ---------------------------------------------------------------------------
# ShellCommandPermissions
# ---------------------------------------------------------------------------

class ShellCommandPermissions:
    """Decides whether a shell command may run without confirmation."""

    def __init__(self, store: Optional[PreferenceStore] = None):
        self._store = store if store is not None else InMemoryPreferenceStore()

    # --- Pattern lists ---

    def get_allowlist_patterns(self) -> list[str]:
        return list(self._store.get(ALLOWLIST_PREFERENCE, []) or [])

    def get_denylist_patterns(self) -> list[str]:
        return list(self._store.get(DENYLIST_PREFERENCE, list(DEFAULT_DENYLIST)) or [])

    def add_allowlist_patterns(self, *patterns: str) -> None:
        self._add_patterns(ALLOWLIST_PREFERENCE, self.get_allowlist_patterns(), patterns)

    def add_denylist_patterns(self, *patterns: str) -> None:
        self._add_patterns(DENYLIST_PREFERENCE, self.get_denylist_patterns(), patterns)

    # Single-pattern spellings used by the confirmation UI and tests
    add_allowlist_pattern = add_allowlist_patterns
    add_denylist_pattern = add_denylist_patterns

    def remove_allowlist_pattern(self, pattern: str) -> None:
        self._remove_pattern(ALLOWLIST_PREFERENCE, self.get_allowlist_patterns(), pattern)

    def remove_denylist_pattern(self, pattern: str) -> None:
        self._remove_pattern(DENYLIST_PREFERENCE, self.get_denylist_patterns(), pattern)

    def _add_patterns(self, key: str, existing: list[str], patterns) -> None:
        # Validate everything before writing anything
        validated = [validate_pattern(p) for p in patterns]
        merged = list(existing)
        for pattern in validated:
            if pattern not in merged:
                merged.append(pattern)
        if len(merged) != len(existing):
            self._store.update(key, merged)

    def _remove_pattern(self, key: str, existing: list[str], pattern: str) -> None:
        remaining = [p for p in existing if p != pattern]
        if len(remaining) != len(existing):
            self._store.update(key, remaining)

    # --- Decisions ---

    def _find_denylist_match(self, sub_commands: list[str]) -> Optional[str]:
        denylist = self.get_denylist_patterns()
        for sub in sub_commands:
            for pattern in denylist:
                if matches_pattern(sub, pattern):
                    return pattern
        return None

    def _is_allow_covered(self, sub_command: str, allowlist: list[str]) -> bool:
        return any(matches_pattern(sub_command, p) for p in allowlist)

    def check_command(self, command: str) -> CommandCheckResult:
        """Classify a command as allowed, denied, dangerous or not-allowed."""
        sub_commands = parse_command(command)

        matched = self._find_denylist_match(sub_commands)
        if matched is not None:
            return CommandCheckResult(allowed=False, reason=REASON_DENIED, matched_pattern=matched)

        if contains_dangerous_patterns(command):
            return CommandCheckResult(allowed=False, reason=REASON_DANGEROUS)

        allowlist = self.get_allowlist_patterns()
        if allowlist and sub_commands and all(
            self._is_allow_covered(sub, allowlist) for sub in sub_commands
        ):
            return CommandCheckResult(allowed=True)

        return CommandCheckResult(allowed=False, reason=REASON_NOT_ALLOWED)

    def is_command_allowed(self, command: str) -> bool:
        return self.check_command(command).allowed

    def is_command_denylisted(self, command: str) -> bool:
        return self._find_denylist_match(parse_command(command)) is not None

    def analyze_command(self, command: str) -> CommandAnalysis:
        """Break a command down for a confirmation prompt. Grants nothing."""
        sub_commands = parse_command(command)
        allowlist = self.get_allowlist_patterns()
        return CommandAnalysis(
            sub_commands=sub_commands,
            has_dangerous_patterns=contains_dangerous_patterns(command),
            unallowed_sub_commands=[
                sub for sub in sub_commands if not self._is_allow_covered(sub, allowlist)
            ],
        )

    def suggest_allow_patterns(self, command: str) -> list[PatternSuggestion]:
        """Allow-list suggestions for the parts of a command not yet allowed."""
        analysis = self.analyze_command(command)
        if analysis.has_dangerous_patterns:
            return []
        return generate_command_patterns(analysis.unallowed_sub_commands)

    def suggest_deny_patterns(self, command: str) -> list[PatternSuggestion]:
        return flatten_suggestions(generate_command_patterns(parse_command(command)))
