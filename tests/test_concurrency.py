"""Section 10: Concurrency (independent executions, registry isolation).

Tests CC.01-CC.05. P2 (registry and sequencing), P3 (real process timing).
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from helpers import FakeExecutor, make_arguments, posix_only, read_audit_records, wait_until
from shell_command_permissions import InMemoryPreferenceStore, ShellCommandPermissions
from shell_executor import ExecutionRequest


@posix_only
@pytest.mark.p3
class TestParallelExecutions:

    def test_cc01_parallel_outputs_isolated(self, executor):
        """CC.01: Concurrent executions keep separate buffers."""
        def _run(i):
            return executor.execute(ExecutionRequest(command=f"echo run-{i}", execution_id=f"cc01-{i}"))

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(_run, range(8)))
        assert [r.stdout for r in results] == [f"run-{i}\n" for i in range(8)]
        assert executor.running_ids() == []

    def test_cc02_cancel_one_leaves_other(self, executor):
        """CC.02: Canceling one execution does not affect another."""
        holder = {}

        def _run(key, command):
            holder[key] = executor.execute(ExecutionRequest(command=command, execution_id=key))

        slow = threading.Thread(target=_run, args=("slow", "sleep 5"), daemon=True)
        quick = threading.Thread(target=_run, args=("quick", "sleep 0.3; echo done"), daemon=True)
        slow.start()
        quick.start()
        assert wait_until(lambda: executor.is_running("slow") and executor.is_running("quick"))
        assert executor.cancel("slow") is True
        slow.join(5)
        quick.join(5)
        assert holder["slow"].canceled is True
        assert holder["quick"].success is True
        assert holder["quick"].stdout == "done\n"

    def test_cc03_running_ids(self, executor):
        """CC.03: running_ids lists every live execution."""
        threads = [
            threading.Thread(
                target=executor.execute,
                args=(ExecutionRequest(command="sleep 5", execution_id=f"cc03-{i}"),),
                daemon=True,
            )
            for i in range(3)
        ]
        for thread in threads:
            thread.start()
        assert wait_until(lambda: len(executor.running_ids()) == 3)
        assert sorted(executor.running_ids()) == ["cc03-0", "cc03-1", "cc03-2"]
        for i in range(3):
            executor.cancel(f"cc03-{i}")
        for thread in threads:
            thread.join(5)
        assert executor.running_ids() == []


@pytest.mark.p2
class TestGatewayConcurrency:

    def test_cc04_sequences_unique(self, make_gateway, tmp_audit_dir):
        """CC.04: Concurrent invocations get distinct sequence numbers and ids."""
        permissions = ShellCommandPermissions(InMemoryPreferenceStore({"shell.commandAllowlist": ["ls *"]}))
        executor = FakeExecutor()
        gateway = make_gateway(permissions, executor)
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda _: gateway.handle(make_arguments("ls")), range(40)))
        records = read_audit_records(tmp_audit_dir)
        assert sorted(r["sequence"] for r in records) == list(range(1, 41))
        assert len({r.execution_id for r in executor.requests}) == 40

    def test_cc05_concurrent_pattern_checks(self):
        """CC.05: Concurrent checks against shared permissions agree."""
        permissions = ShellCommandPermissions(InMemoryPreferenceStore({
            "shell.commandAllowlist": ["git log *"],
            "shell.commandDenylist": ["git push *"],
        }))
        commands = ["git log", "git push origin", "ls"] * 50
        with ThreadPoolExecutor(max_workers=8) as pool:
            reasons = list(pool.map(lambda c: permissions.check_command(c).reason, commands))
        assert reasons == [None, "denied", "not-allowed"] * 50
