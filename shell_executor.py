"""Shell executor: runs approved commands as OS processes with bounded resources.

Public API:
    executor = ShellExecutor()
    result = executor.execute(ExecutionRequest(command="ls -la", execution_id="exec_001"))
    executor.cancel("exec_001")   # from another thread while execute() is blocked

Lifecycle per execution_id: pending -> running -> completed | timed-out |
canceled | errored. execute() blocks the calling thread until the process
exits; cancel() and the timeout timer act from other threads.
"""

import os
import signal
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_TIMEOUT_MS = 120_000
MAX_TIMEOUT_MS = 600_000
OUTPUT_CAP_BYTES = 1024 * 1024

_READ_CHUNK_SIZE = 64 * 1024
# Background children can keep a pipe open after the shell exits
_READER_JOIN_TIMEOUT_SECONDS = 2.0


# ---------------------------------------------------------------------------
# Request / result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExecutionRequest:
    command: str
    execution_id: str
    cwd: Optional[str] = None
    workspace_root: Optional[str] = None
    timeout_ms: Optional[int] = None


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    exit_code: Optional[int] = None
    error: Optional[str] = None
    canceled: bool = False
    timed_out: bool = False
    resolved_cwd: Optional[str] = None
    stdout_capped: bool = False
    stderr_capped: bool = False


# ---------------------------------------------------------------------------
# Process-tree termination
# ---------------------------------------------------------------------------

def _kill_child(process: subprocess.Popen) -> None:
    """Last resort: signal the immediate child. Gone already is fine."""
    try:
        process.kill()
    except OSError:
        pass


class ProcessTreeKiller(ABC):
    """Terminates a process together with everything it spawned."""

    @abstractmethod
    def kill_tree(self, process: subprocess.Popen) -> None:
        ...


class PosixProcessTreeKiller(ProcessTreeKiller):
    """SIGTERM to the process group; the child leads its own session."""

    def kill_tree(self, process: subprocess.Popen) -> None:
        try:
            os.kill(-process.pid, signal.SIGTERM)
        except OSError:
            _kill_child(process)


class WindowsProcessTreeKiller(ProcessTreeKiller):
    """taskkill /T /F over the whole tree."""

    def kill_tree(self, process: subprocess.Popen) -> None:
        try:
            subprocess.run(
                ["taskkill", "/pid", str(process.pid), "/T", "/F"],
                capture_output=True,
                check=True,
            )
        except (OSError, subprocess.CalledProcessError):
            _kill_child(process)


def default_tree_killer() -> ProcessTreeKiller:
    if os.name == "nt":
        return WindowsProcessTreeKiller()
    return PosixProcessTreeKiller()


def _spawn_options() -> dict:
    if os.name == "nt":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class CancellationToken:
    """Caller-owned cancel signal. Callbacks run once, on the cancelling thread."""

    def __init__(self):
        self._lock = threading.Lock()
        self._cancelled = False
        self._callbacks: list[Callable[[], Any]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def on_cancel(self, callback: Callable[[], Any]) -> Callable[[], None]:
        """Register a callback; runs it right away if already cancelled.

        Returns a function that unregisters the callback again.
        """
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return lambda: self._remove_callback(callback)
        callback()
        return lambda: None

    def _remove_callback(self, callback: Callable[[], Any]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def resolve_cwd(cwd: Optional[str], workspace_root: Optional[str]) -> Optional[str]:
    """Absolute cwd wins, relative cwd joins the workspace root, else the root.

    None means the shell's own default working directory.
    """
    if cwd:
        path = Path(cwd)
        if path.is_absolute():
            return str(path)
        if workspace_root:
            return os.path.normpath(str(Path(workspace_root) / path))
        return cwd
    return workspace_root or None


def _elapsed_ms(start: float) -> int:
    return int(round((time.monotonic() - start) * 1000))


class _CappedBuffer:
    """Byte buffer that silently drops input past a hard cap."""

    def __init__(self, cap: int):
        self._cap = cap
        self._data = bytearray()
        self.capped = False

    def append(self, chunk: bytes) -> None:
        remaining = self._cap - len(self._data)
        if len(chunk) > remaining:
            self.capped = True
            chunk = chunk[:max(remaining, 0)]
        self._data.extend(chunk)

    def text(self) -> str:
        return self._data.decode("utf-8", errors="replace")


def _drain(stream, buffer: _CappedBuffer) -> None:
    try:
        for chunk in iter(lambda: stream.read1(_READ_CHUNK_SIZE), b""):
            buffer.append(chunk)
    except (OSError, ValueError):
        # Stream closed while the process tree was being torn down
        return
    finally:
        stream.close()


def _start_reader(stream, buffer: _CappedBuffer, name: str) -> threading.Thread:
    thread = threading.Thread(target=_drain, args=(stream, buffer), name=name, daemon=True)
    thread.start()
    return thread


class _RunningExecution:
    """Registry entry: live handle plus the flags read at exit time."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        self.process: Optional[subprocess.Popen] = None
        self.canceled = False
        self.timed_out = False
        self._lock = threading.Lock()

    def attach(self, process: subprocess.Popen) -> bool:
        """Record the spawned process. False if cancel() got here first."""
        with self._lock:
            self.process = process
            return not self.canceled

    def mark_canceled(self) -> Optional[subprocess.Popen]:
        with self._lock:
            self.canceled = True
            return self.process

    def mark_timed_out(self) -> None:
        with self._lock:
            self.timed_out = True


# ---------------------------------------------------------------------------
# ShellExecutor
# ---------------------------------------------------------------------------

class ShellExecutor:
    """Spawns shell commands, enforces timeouts and output caps, supports cancel.

    The running-process registry is the only shared mutable state; every
    access goes through self._lock. Distinct execution ids never interact.
    """

    def __init__(
        self,
        tree_killer: Optional[ProcessTreeKiller] = None,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_timeout_ms: int = MAX_TIMEOUT_MS,
        output_cap_bytes: int = OUTPUT_CAP_BYTES,
    ):
        self._tree_killer = tree_killer or default_tree_killer()
        self._default_timeout_ms = default_timeout_ms
        self._max_timeout_ms = max_timeout_ms
        self._output_cap_bytes = output_cap_bytes
        self._running: dict[str, _RunningExecution] = {}
        self._lock = threading.Lock()

    # --- Registry ---

    def is_running(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._running

    def running_ids(self) -> list[str]:
        with self._lock:
            return list(self._running)

    def _deregister(self, entry: _RunningExecution) -> None:
        with self._lock:
            if self._running.get(entry.execution_id) is entry:
                del self._running[entry.execution_id]

    def effective_timeout_ms(self, requested_ms: Optional[int]) -> int:
        if not requested_ms or requested_ms <= 0:
            requested_ms = self._default_timeout_ms
        return min(requested_ms, self._max_timeout_ms)

    # --- Execute ---

    def execute(
        self,
        request: ExecutionRequest,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ExecutionResult:
        """Run the command through the OS shell and wait for it to finish.

        A cancel_token, if given, is wired to cancel(request.execution_id)
        once the execution is registered; a token that is already cancelled
        cancels before anything is spawned.
        """
        start = time.monotonic()
        cwd = resolve_cwd(request.cwd, request.workspace_root)
        timeout_ms = self.effective_timeout_ms(request.timeout_ms)

        entry = _RunningExecution(request.execution_id)
        with self._lock:
            if request.execution_id in self._running:
                return ExecutionResult(
                    success=False,
                    error=f"Execution '{request.execution_id}' is already running",
                    resolved_cwd=cwd,
                )
            self._running[request.execution_id] = entry

        detach = None
        if cancel_token is not None:
            detach = cancel_token.on_cancel(lambda: self.cancel(request.execution_id))

        try:
            return self._run(request.command, entry, cwd, timeout_ms, start)
        finally:
            # A reused token must not reach later runs under the same id
            if detach is not None:
                detach()
            self._deregister(entry)

    def _run(
        self,
        command: str,
        entry: _RunningExecution,
        cwd: Optional[str],
        timeout_ms: int,
        start: float,
    ) -> ExecutionResult:
        if entry.canceled:
            return ExecutionResult(success=False, canceled=True, error="Command was canceled",
                                   duration_ms=_elapsed_ms(start), resolved_cwd=cwd)

        try:
            process = subprocess.Popen(
                command,
                shell=True,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                **_spawn_options(),
            )
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            return ExecutionResult(
                success=False,
                error=str(e) or type(e).__name__,
                duration_ms=_elapsed_ms(start),
                resolved_cwd=cwd,
            )

        if not entry.attach(process):
            # Canceled between registration and spawn
            self._tree_killer.kill_tree(process)

        stdout_buf = _CappedBuffer(self._output_cap_bytes)
        stderr_buf = _CappedBuffer(self._output_cap_bytes)
        readers = [
            _start_reader(process.stdout, stdout_buf, f"stdout-{entry.execution_id}"),
            _start_reader(process.stderr, stderr_buf, f"stderr-{entry.execution_id}"),
        ]

        timer = threading.Timer(timeout_ms / 1000.0, self._on_timeout, args=(entry,))
        timer.daemon = True
        timer.start()
        try:
            returncode = process.wait()
        finally:
            timer.cancel()

        # Deregister before reading the flags: cancel() after this point is a no-op
        self._deregister(entry)
        for reader in readers:
            reader.join(_READER_JOIN_TIMEOUT_SECONDS)

        common = dict(
            stdout=stdout_buf.text(),
            stderr=stderr_buf.text(),
            duration_ms=_elapsed_ms(start),
            resolved_cwd=cwd,
            stdout_capped=stdout_buf.capped,
            stderr_capped=stderr_buf.capped,
        )

        # The canceled flag wins over a timeout that delivered the same kill
        if entry.canceled:
            return ExecutionResult(success=False, canceled=True,
                                   error="Command was canceled", **common)
        if entry.timed_out:
            return ExecutionResult(success=False, timed_out=True,
                                   error=f"Command timed out after {timeout_ms}ms", **common)
        return ExecutionResult(success=returncode == 0, exit_code=returncode, **common)

    def _on_timeout(self, entry: _RunningExecution) -> None:
        process = entry.process
        if process is None or process.poll() is not None:
            return
        entry.mark_timed_out()
        self._tree_killer.kill_tree(process)

    # --- Cancel ---

    def cancel(self, execution_id: str) -> bool:
        """Cancel a running execution. False if nothing is running under that id."""
        if not isinstance(execution_id, str):
            return False
        with self._lock:
            entry = self._running.pop(execution_id, None)
        if entry is None:
            return False

        process = entry.mark_canceled()
        if process is not None and process.poll() is None:
            self._tree_killer.kill_tree(process)
        return True
