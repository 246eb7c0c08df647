"""Shared helper functions and classes for Shell Gateway tests.

Import these in test files: from helpers import make_arguments, ConfirmationTracker, ...
Fixtures are in conftest.py and are auto-injected by pytest.
"""

import json
import os
import shlex
import sys
import time
from pathlib import Path

import pytest

from shell_executor import ExecutionResult
from shell_gateway import ConfirmationDecision


posix_only = pytest.mark.skipif(os.name == "nt", reason="POSIX shell commands")


# ---------------------------------------------------------------------------
# Confirmation callback helpers
# ---------------------------------------------------------------------------

def confirm_approve(command, check, analysis):
    return ConfirmationDecision(action="approve")


def confirm_error(command, check, analysis):
    raise RuntimeError("Confirmation UI failure")


class ConfirmationTracker:
    """Confirmation callback that tracks invocations and returns a configurable decision."""

    def __init__(self, action="approve", patterns=None, reason=None):
        self.calls = []
        self.action = action
        self.patterns = patterns or []
        self.reason = reason

    def __call__(self, command, check, analysis):
        self.calls.append({"command": command, "check": check, "analysis": analysis})
        return ConfirmationDecision(action=self.action, patterns=self.patterns, reason=self.reason)


# ---------------------------------------------------------------------------
# Executor helpers
# ---------------------------------------------------------------------------

class FakeExecutor:
    """Executor stand-in that records requests and returns a canned result."""

    def __init__(self, result=None):
        self.requests = []
        self.cancel_tokens = []
        self.canceled = []
        self.result = result or ExecutionResult(success=True, stdout="ok", exit_code=0, duration_ms=5)

    def execute(self, request, cancel_token=None):
        self.requests.append(request)
        self.cancel_tokens.append(cancel_token)
        return self.result

    def cancel(self, execution_id):
        self.canceled.append(execution_id)
        return False


def python_command(code):
    """Shell command line that runs a Python snippet with the current interpreter."""
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


def wait_until(predicate, timeout=5.0, interval=0.01):
    """Poll predicate until it is true or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


# ---------------------------------------------------------------------------
# Request builder helper
# ---------------------------------------------------------------------------

def make_arguments(command, **extra):
    return json.dumps({"command": command, **extra})


# ---------------------------------------------------------------------------
# Audit log reader helper
# ---------------------------------------------------------------------------

def read_audit_records(audit_dir, session_id="test_session"):
    """Read all audit records from a session's JSONL file."""
    filepath = Path(audit_dir) / f"shell_audit_{session_id}.jsonl"
    if not filepath.exists():
        return []
    records = []
    for line in filepath.read_text().strip().split("\n"):
        if line:
            records.append(json.loads(line))
    return records
