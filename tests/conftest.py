"""Shared fixtures for Shell Gateway tests.

Fixtures are auto-injected by pytest. Helper functions are in helpers.py.
"""

import sys
from pathlib import Path

import pytest

# Add parent directory and tests directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from shell_command_permissions import InMemoryPreferenceStore, ShellCommandPermissions
from shell_executor import ShellExecutor
from shell_gateway import ShellGateway


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_audit_dir(tmp_path):
    return str(tmp_path / "audit")


@pytest.fixture
def store():
    """Preference store with empty allow- and deny-lists."""
    return InMemoryPreferenceStore({
        "shell.commandAllowlist": [],
        "shell.commandDenylist": [],
    })


@pytest.fixture
def permissions(store):
    return ShellCommandPermissions(store)


@pytest.fixture
def executor():
    return ShellExecutor()


@pytest.fixture
def make_gateway(tmp_audit_dir):
    """Factory fixture to create ShellGateway instances with configurable options."""
    def _make(
        permissions=None,
        executor=None,
        confirmation_callback=None,
        workspace_root=None,
        session_id="test_session",
    ):
        return ShellGateway(
            permissions=permissions or ShellCommandPermissions(InMemoryPreferenceStore()),
            executor=executor or ShellExecutor(),
            session_id=session_id,
            audit_dir=tmp_audit_dir,
            confirmation_callback=confirmation_callback,
            workspace_root=workspace_root,
        )
    return _make

