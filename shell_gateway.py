#!/usr/bin/env python3
"""Shell gateway: the agent-facing tool that gates and runs host shell commands.

Public API:
    gateway = ShellGateway(permissions, executor, session_id="sess_001")
    result = gateway.handle('{"command": "git log --oneline", "cwd": "repo"}')
    gateway.cancel_execution(execution_id)

Pipeline: Parse input -> Check policy -> Confirm (if not auto-allowed) ->
Execute -> Bound output -> Audit.

Usage (CLI):
    shell-gateway [--cwd DIR] [--timeout MS] [--full-output] [--allow PATTERN] ... [command]
"""

import argparse
import json
import math
import os
import re
import sys
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from dotenv import load_dotenv

from shell_command_permissions import (
    CommandAnalysis,
    CommandCheckResult,
    JsonPreferenceStore,
    REASON_DANGEROUS,
    REASON_DENIED,
    PatternValidationError,
    ShellCommandPermissions,
    generate_command_patterns,
)
from shell_executor import (
    DEFAULT_TIMEOUT_MS,
    MAX_TIMEOUT_MS,
    OUTPUT_CAP_BYTES,
    CancellationToken,
    ExecutionRequest,
    ExecutionResult,
    ShellExecutor,
)
from shell_output import combine_output, truncate_output


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_AUDIT_DIR = "./audit"
DEFAULT_PREFERENCES_FILE = "./shell_permissions.json"

DECISION_AUTO_ALLOWED = "auto_allowed"
DECISION_USER_APPROVED = "user_approved"
DECISION_USER_DENIED = "user_denied"
DECISION_USER_ABANDONED = "user_abandoned"
DECISION_EMPTY_COMMAND = "empty_command"

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_TIMED_OUT = "timed_out"
STATUS_CANCELED = "canceled"
STATUS_DENIED = "denied"
STATUS_ERROR = "error"

_PARTIAL_COMMAND_RE = re.compile(r'"command"\s*:\s*"([^"]*)"?')


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class GatewayConfig:
    audit_dir: str = DEFAULT_AUDIT_DIR
    preferences_file: str = DEFAULT_PREFERENCES_FILE
    workspace_root: Optional[str] = None
    default_timeout_ms: int = DEFAULT_TIMEOUT_MS
    max_timeout_ms: int = MAX_TIMEOUT_MS


def _env_timeout(environ, name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        value = 0
    if value <= 0:
        print(f"WARNING: {name}={raw!r} is not a positive integer, using {default}",
              file=sys.stderr)
        return default
    return value


def load_config(environ=None) -> GatewayConfig:
    """Build the gateway configuration from the environment (and .env)."""
    if environ is None:
        load_dotenv()
        environ = os.environ

    max_timeout = _env_timeout(environ, "SHELL_GATEWAY_MAX_TIMEOUT_MS", MAX_TIMEOUT_MS)
    default_timeout = _env_timeout(environ, "SHELL_GATEWAY_TIMEOUT_MS", DEFAULT_TIMEOUT_MS)

    return GatewayConfig(
        audit_dir=environ.get("SHELL_GATEWAY_AUDIT_DIR") or DEFAULT_AUDIT_DIR,
        preferences_file=environ.get("SHELL_GATEWAY_PREFERENCES_FILE") or DEFAULT_PREFERENCES_FILE,
        workspace_root=environ.get("SHELL_GATEWAY_WORKSPACE_ROOT") or None,
        default_timeout_ms=min(default_timeout, max_timeout),
        max_timeout_ms=max_timeout,
    )


# ---------------------------------------------------------------------------
# Input parsing
# ---------------------------------------------------------------------------

@dataclass
class ExecutionInput:
    command: str = ""
    cwd: Optional[str] = None
    timeout: Optional[int] = None
    full_output: bool = False
    execution_id: Optional[str] = None
    workspace_root: Optional[str] = None


def _parse_timeout(value: Any) -> Optional[int]:
    """Whole milliseconds from a JSON number; None for anything else."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    try:
        return int(value)
    except (OverflowError, ValueError):
        return None


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def parse_execution_input(arguments: Any) -> ExecutionInput:
    """Parse tool arguments, tolerating partial JSON from a streaming model.

    Falls back to pulling "command" out with a regex; gives an empty command
    when nothing is recoverable.
    """
    if isinstance(arguments, dict):
        data = arguments
    else:
        text = arguments if isinstance(arguments, str) else ""
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, TypeError):
            match = _PARTIAL_COMMAND_RE.search(text)
            return ExecutionInput(command=match.group(1) if match else "")

    if not isinstance(data, dict):
        return ExecutionInput()

    command = data.get("command")
    return ExecutionInput(
        command=command if isinstance(command, str) else "",
        cwd=_optional_str(data.get("cwd")),
        timeout=_parse_timeout(data.get("timeout")),
        full_output=data.get("fullOutput") is True,
        execution_id=_optional_str(data.get("executionId")),
        workspace_root=_optional_str(data.get("workspaceRoot")),
    )


# ---------------------------------------------------------------------------
# Confirmation decision types
# ---------------------------------------------------------------------------

@dataclass
class ConfirmationDecision:
    action: str  # "approve", "deny"
    patterns: list[str] = field(default_factory=list)
    reason: Optional[str] = None


# Default confirmation callback: denies everything (fail-closed)
def _default_confirmation_callback(
    command: str, check: CommandCheckResult, analysis: CommandAnalysis
) -> ConfirmationDecision:
    return ConfirmationDecision(action="deny")


# ---------------------------------------------------------------------------
# Result formatting
# ---------------------------------------------------------------------------

def format_execution_output(result: ExecutionResult, full_output: bool = False) -> tuple[str, int]:
    """Combined, bounded output text plus the number of characters cut."""
    output = combine_output(result.stdout, result.stderr)
    chars_omitted = 0
    notes = []

    if not full_output:
        output, meta = truncate_output(output)
        chars_omitted = meta["total_chars_omitted"]
        if chars_omitted:
            notes.append(
                f"[Output truncated: {chars_omitted} characters omitted. "
                "Request fullOutput for the complete output.]"
            )

    for stream, capped in (("stdout", result.stdout_capped), ("stderr", result.stderr_capped)):
        if capped:
            notes.append(
                f"[Warning: {stream} exceeded {OUTPUT_CAP_BYTES} bytes; further output was discarded]"
            )

    if notes:
        output = "\n\n".join([output] + notes) if output else "\n".join(notes)
    return output, chars_omitted


def _tool_result(result: ExecutionResult, output: str) -> dict[str, Any]:
    if result.canceled:
        return {"canceled": True, "output": output, "duration": result.duration_ms}

    response: dict[str, Any] = {
        "success": result.success,
        "output": output,
        "duration": result.duration_ms,
    }
    if result.exit_code is not None:
        response["exitCode"] = result.exit_code
    if result.error:
        response["error"] = result.error
    if result.resolved_cwd:
        response["cwd"] = result.resolved_cwd
    return response


def is_canceled_result(obj: Any) -> bool:
    return isinstance(obj, dict) and obj.get("canceled") is True


def is_tool_result(obj: Any) -> bool:
    return (
        isinstance(obj, dict)
        and isinstance(obj.get("success"), bool)
        and isinstance(obj.get("output"), str)
        and isinstance(obj.get("duration"), (int, float))
    )


def _result_status(result: ExecutionResult) -> str:
    if result.canceled:
        return STATUS_CANCELED
    if result.timed_out:
        return STATUS_TIMED_OUT
    if result.success:
        return STATUS_COMPLETED
    if result.exit_code is None:
        return STATUS_ERROR
    return STATUS_FAILED


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------

@dataclass
class AuditRecord:
    timestamp: str
    session_id: str
    sequence: int
    execution_id: Optional[str]
    command: str
    decision: str
    check_reason: Optional[str]
    matched_pattern: Optional[str]
    status: str
    exit_code: Optional[int]
    duration_ms: Optional[int]
    cwd: Optional[str]
    output_summary: str
    chars_omitted: int
    stdout_capped: bool
    stderr_capped: bool


def _write_audit_record(record: AuditRecord, audit_dir: Path, session_id: str):
    """Append one audit record to the session's JSONL file."""
    audit_dir.mkdir(parents=True, exist_ok=True)
    filepath = audit_dir / f"shell_audit_{session_id}.jsonl"
    with open(filepath, "a") as f:
        f.write(json.dumps(asdict(record), default=str) + "\n")


# ---------------------------------------------------------------------------
# ShellGateway - main class
# ---------------------------------------------------------------------------

class ShellGateway:
    """Gate between an AI agent and the host shell.

    Usage:
        gateway = ShellGateway(permissions, executor, session_id="sess_001")
        result = gateway.handle('{"command": "ls -la"}')
    """

    def __init__(
        self,
        permissions: ShellCommandPermissions,
        executor: ShellExecutor,
        session_id: str,
        audit_dir: str = DEFAULT_AUDIT_DIR,
        confirmation_callback: Optional[Callable] = None,
        workspace_root: Optional[str] = None,
    ):
        self._permissions = permissions
        self._executor = executor
        self._session_id = session_id
        self._audit_dir = Path(audit_dir)
        self._confirmation_callback = confirmation_callback or _default_confirmation_callback
        self._workspace_root = workspace_root
        self._sequence = 0
        self._sequence_lock = threading.Lock()

    def _next_sequence(self) -> int:
        with self._sequence_lock:
            self._sequence += 1
            return self._sequence

    def cancel_execution(self, execution_id: str) -> bool:
        return self._executor.cancel(execution_id)

    def handle(
        self,
        arguments: Any,
        execution_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> dict[str, Any]:
        """Run one tool invocation end to end and return the wire result."""
        sequence = self._next_sequence()
        request = parse_execution_input(arguments)
        execution_id = (
            execution_id
            or request.execution_id
            or f"{self._session_id}_{sequence:03d}_{uuid.uuid4().hex[:8]}"
        )
        command = request.command.strip()

        # --- Validate request ---
        if not command:
            self._write_audit(sequence, execution_id, request.command, DECISION_EMPTY_COMMAND,
                              status=STATUS_ERROR)
            return {"success": False, "output": "", "error": "No command provided", "duration": 0}

        # --- Check policy ---
        check = self._permissions.check_command(command)
        decision = DECISION_AUTO_ALLOWED

        # --- Confirm ---
        if not check.allowed:
            decision, denial = self._confirm(command, check)
            if denial is not None:
                self._write_audit(sequence, execution_id, command, decision,
                                  check=check, status=STATUS_DENIED)
                return denial

        # --- Execute ---
        result = self._executor.execute(
            ExecutionRequest(
                command=command,
                execution_id=execution_id,
                cwd=request.cwd,
                workspace_root=request.workspace_root or self._workspace_root,
                timeout_ms=request.timeout,
            ),
            cancel_token=cancel_token,
        )

        # --- Bound output ---
        output, chars_omitted = format_execution_output(result, full_output=request.full_output)
        response = _tool_result(result, output)

        self._write_audit(
            sequence, execution_id, command, decision,
            check=check,
            status=_result_status(result),
            result=result,
            output=output,
            chars_omitted=chars_omitted,
        )
        return response

    def _confirm(
        self, command: str, check: CommandCheckResult
    ) -> tuple[str, Optional[dict[str, Any]]]:
        """Ask the confirmation callback. Returns (decision, denial response or None)."""
        analysis = self._permissions.analyze_command(command)
        try:
            decision = self._confirmation_callback(command, check, analysis)
        except Exception:
            # Confirmation mechanism failure - fail closed
            return DECISION_USER_ABANDONED, {
                "success": False,
                "output": "",
                "error": "Command was not confirmed",
                "duration": 0,
            }

        if isinstance(decision, dict):
            decision = ConfirmationDecision(
                action=decision.get("action", "deny"),
                patterns=list(decision.get("patterns") or []),
                reason=decision.get("reason"),
            )

        if decision.action != "approve":
            self._remember_patterns(self._permissions.add_denylist_patterns, decision.patterns)
            error = "Command denied by user"
            if decision.reason:
                error = f"{error}: {decision.reason}"
            return DECISION_USER_DENIED, {"success": False, "output": "", "error": error, "duration": 0}

        self._remember_patterns(self._permissions.add_allowlist_patterns, decision.patterns)
        return DECISION_USER_APPROVED, None

    @staticmethod
    def _remember_patterns(add: Callable, patterns: list[str]) -> None:
        if not patterns:
            return
        try:
            add(*patterns)
        except PatternValidationError as e:
            print(f"WARNING: Pattern not saved: {e}", file=sys.stderr)

    def _write_audit(
        self,
        sequence: int,
        execution_id: Optional[str],
        command: str,
        decision: str,
        status: str,
        check: Optional[CommandCheckResult] = None,
        result: Optional[ExecutionResult] = None,
        output: str = "",
        chars_omitted: int = 0,
    ):
        """Write an audit record. Failures are logged to stderr but never block execution."""
        record = AuditRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            session_id=self._session_id,
            sequence=sequence,
            execution_id=execution_id,
            command=command,
            decision=decision,
            check_reason=check.reason if check else None,
            matched_pattern=check.matched_pattern if check else None,
            status=status,
            exit_code=result.exit_code if result else None,
            duration_ms=result.duration_ms if result else None,
            cwd=result.resolved_cwd if result else None,
            output_summary=output[:200] if output else "",
            chars_omitted=chars_omitted,
            stdout_capped=result.stdout_capped if result else False,
            stderr_capped=result.stderr_capped if result else False,
        )

        try:
            _write_audit_record(record, self._audit_dir, self._session_id)
        except Exception as e:
            print(f"WARNING: Audit log write failure: {e}", file=sys.stderr)


# ---------------------------------------------------------------------------
# Terminal confirmation
# ---------------------------------------------------------------------------

def _check_explanation(check: CommandCheckResult) -> str:
    if check.reason == REASON_DENIED:
        return f"matches deny-list pattern '{check.matched_pattern}'"
    if check.reason == REASON_DANGEROUS:
        return "contains substitution, expansion or grouping syntax"
    return "not covered by the allow-list"


def terminal_confirmation_callback(
    command: str, check: CommandCheckResult, analysis: CommandAnalysis
) -> ConfirmationDecision:
    """Block, print a confirmation box, and wait for the user's decision."""
    W = 71
    def _row(label: str, value: str):
        content = f"{label}{value}"[: W - 4]
        print(f"|  {content:<{W - 4}}|")

    suggestions = [] if analysis.has_dangerous_patterns else generate_command_patterns(
        analysis.unallowed_sub_commands
    )
    first_line = command.split("\n")[0]

    print("\n+" + "-" * (W - 2) + "+")
    _row("", "SHELL COMMAND NEEDS CONFIRMATION")
    _row("COMMAND:  ", first_line[:55] + ("..." if len(first_line) > 55 else ""))
    _row("REASON:   ", _check_explanation(check))
    print("|" + " " * (W - 2) + "|")
    for i, suggestion in enumerate(suggestions, 1):
        _row(f"[{i}] ", "Always allow: " + ", ".join(suggestion.patterns))
    _row("", "[A]pprove once   [D]eny")
    print("+" + "-" * (W - 2) + "+")

    choice = input("Your choice: ").strip().lower()

    if choice == "a":
        return ConfirmationDecision(action="approve")
    if choice.isdigit() and 1 <= int(choice) <= len(suggestions):
        return ConfirmationDecision(action="approve", patterns=suggestions[int(choice) - 1].patterns)

    reason = input("Denial reason (optional, press Enter to skip): ").strip()
    return ConfirmationDecision(action="deny", reason=reason or None)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _apply_pattern_flags(permissions: ShellCommandPermissions, args) -> bool:
    """Apply pattern management flags. Returns False on a validation error."""
    try:
        if args.allow:
            permissions.add_allowlist_patterns(*args.allow)
        if args.deny:
            permissions.add_denylist_patterns(*args.deny)
    except PatternValidationError as e:
        print(f"[ERROR] {e}")
        return False
    for pattern in args.remove_allow or []:
        permissions.remove_allowlist_pattern(pattern)
    for pattern in args.remove_deny or []:
        permissions.remove_denylist_pattern(pattern)
    return True


def _run_with_interrupt(gateway: ShellGateway, arguments: dict) -> dict:
    """Run handle() on a worker thread so Ctrl-C can cancel the execution."""
    token = CancellationToken()
    holder: dict[str, Any] = {}

    def _work():
        holder["result"] = gateway.handle(arguments, cancel_token=token)

    worker = threading.Thread(target=_work, name="shell-gateway-worker", daemon=True)
    worker.start()
    while worker.is_alive():
        try:
            worker.join(0.2)
        except KeyboardInterrupt:
            print("\nCanceling...")
            token.cancel()
    return holder.get("result", {"canceled": True, "output": ""})


def main():
    parser = argparse.ArgumentParser(description="Shell gateway - policy-gated shell command execution")
    parser.add_argument("command",            nargs="?", default="", help="Shell command to run")
    parser.add_argument("--cwd",              default=None, help="Working directory (relative to the workspace root)")
    parser.add_argument("--timeout",          type=int, default=None, metavar="MS", help="Timeout in milliseconds")
    parser.add_argument("--full-output",      action="store_true", help="Do not truncate output")
    parser.add_argument("--session-id",       default=None, help="Session id used for the audit file name")
    parser.add_argument("--audit-dir",        default=None, help="Audit directory (default from environment)")
    parser.add_argument("--preferences-file", default=None, help="Pattern list file (default from environment)")
    parser.add_argument("--workspace-root",   default=None, help="Base for relative working directories")
    parser.add_argument("--allow",            action="append", metavar="PATTERN", help="Add an allow-list pattern")
    parser.add_argument("--deny",             action="append", metavar="PATTERN", help="Add a deny-list pattern")
    parser.add_argument("--remove-allow",     action="append", metavar="PATTERN", help="Remove an allow-list pattern")
    parser.add_argument("--remove-deny",      action="append", metavar="PATTERN", help="Remove a deny-list pattern")
    parser.add_argument("--list-patterns",    action="store_true", help="Print the allow and deny lists")
    args = parser.parse_args()

    config = load_config()
    permissions = ShellCommandPermissions(
        JsonPreferenceStore(args.preferences_file or config.preferences_file)
    )

    if not _apply_pattern_flags(permissions, args):
        sys.exit(1)

    if args.list_patterns:
        print("Allow-list:")
        for pattern in permissions.get_allowlist_patterns():
            print(f"  {pattern}")
        print("Deny-list:")
        for pattern in permissions.get_denylist_patterns():
            print(f"  {pattern}")

    if not args.command:
        if not (args.allow or args.deny or args.remove_allow or args.remove_deny or args.list_patterns):
            parser.print_help()
            sys.exit(1)
        return

    session_id = args.session_id or f"shell_{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}"
    gateway = ShellGateway(
        permissions=permissions,
        executor=ShellExecutor(
            default_timeout_ms=config.default_timeout_ms,
            max_timeout_ms=config.max_timeout_ms,
        ),
        session_id=session_id,
        audit_dir=args.audit_dir or config.audit_dir,
        confirmation_callback=terminal_confirmation_callback,
        workspace_root=args.workspace_root or config.workspace_root,
    )

    arguments: dict[str, Any] = {"command": args.command, "fullOutput": args.full_output}
    if args.cwd:
        arguments["cwd"] = args.cwd
    if args.timeout is not None:
        arguments["timeout"] = args.timeout

    result = _run_with_interrupt(gateway, arguments)

    if result.get("output"):
        print(result["output"])
    if is_canceled_result(result):
        print("[canceled]", file=sys.stderr)
        sys.exit(130)
    if result.get("error"):
        print(f"[ERROR] {result['error']}", file=sys.stderr)
    if result.get("success"):
        return
    exit_code = result.get("exitCode")
    sys.exit(exit_code if isinstance(exit_code, int) and exit_code > 0 else 1)


if __name__ == "__main__":
    main()
