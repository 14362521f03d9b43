"""Subprocess wrapper — the single mock seam for all tests."""

import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Mapping

from repo_setup import log

TRACE_ENV = "REPO_SETUP_DEBUG"
CHUNK_SIZE = 8192
TERM_TIMEOUT = 2.0
KILL_TIMEOUT = 1.0
CANCEL_POLL = 0.05
DRAIN_TIMEOUT = 2.0

IS_WINDOWS = sys.platform == "win32"

Destination = Callable[[bytes], None]


class ProcessError(RuntimeError):
    """Base class for everything raised by this module."""


class LaunchError(ProcessError):
    """The executable could not be started at all."""

    def __init__(self, command_line: str, cause: OSError):
        super().__init__(f"Failed to launch command: {command_line}: {cause}")
        self.command_line = command_line


class CommandFailed(ProcessError):
    """The process ran and exited with a code the caller did not accept."""

    def __init__(self, command_line: str, returncode: int, stderr: str = ""):
        message = f"Command finished with {returncode} exit code: {command_line}"
        if stderr.strip():
            message += f"\n{stderr.rstrip()}"
        super().__init__(message)
        self.command_line = command_line
        self.returncode = returncode
        self.stderr = stderr


class CommandCancelled(ProcessError):
    """The run was cancelled or timed out and the child was terminated."""

    def __init__(self, command_line: str, reason: str):
        super().__init__(f"Command {reason}: {command_line}")
        self.command_line = command_line


def _quote(arg: str) -> str:
    return f"'{arg}'" if any(c.isspace() for c in arg) else arg


@dataclass(frozen=True)
class CommandSpec:
    executable: str
    args: tuple[str, ...] = ()
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)

    @property
    def argv(self) -> list[str]:
        return [self.executable, *self.args]

    @property
    def command_line(self) -> str:
        return " ".join(_quote(a) for a in self.argv)

    def merged_env(self) -> dict[str, str] | None:
        """Inherited environment with the overlay applied, or None to inherit as-is."""
        if not self.env:
            return None
        return {**os.environ, **self.env}


def _console(name: str) -> Destination:
    # Resolved on every write so redirected sys.stdout/sys.stderr are honoured.
    def write(chunk: bytes) -> None:
        stream = getattr(sys, name)
        buffer = getattr(stream, "buffer", None)
        stream.flush()
        if buffer is not None:
            buffer.write(chunk)
            buffer.flush()
        else:
            stream.write(chunk.decode(errors="replace"))
            stream.flush()

    return write


console_stdout = _console("stdout")
console_stderr = _console("stderr")


@dataclass(frozen=True)
class StreamPolicy:
    capture: bool = False
    destination: Destination | None = None

    @property
    def active(self) -> bool:
        return self.capture or self.destination is not None


def discard() -> StreamPolicy:
    return StreamPolicy()


def forward(destination: Destination) -> StreamPolicy:
    return StreamPolicy(destination=destination)


def capture() -> StreamPolicy:
    return StreamPolicy(capture=True)


def capture_and_forward(destination: Destination) -> StreamPolicy:
    return StreamPolicy(capture=True, destination=destination)


@dataclass(frozen=True)
class OutputPolicy:
    stdout: StreamPolicy = field(default_factory=discard)
    stderr: StreamPolicy = field(default_factory=discard)


CHECKED_POLICY = OutputPolicy(stdout=capture(), stderr=forward(console_stderr))


@dataclass
class ExecutionResult:
    returncode: int
    stdout: bytes = b""
    stderr: bytes = b""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def text(self) -> str:
        return self.stdout.decode(errors="replace")

    def error_text(self) -> str:
        return self.stderr.decode(errors="replace")


def trace_enabled() -> bool:
    """Whether REPO_SETUP_DEBUG asks for every command to be traced."""
    return os.environ.get(TRACE_ENV, "").strip().lower() in ("1", "true")


def _with_console(policy: StreamPolicy, console: Destination) -> StreamPolicy:
    """Add the console to a stream's destinations, keeping the caller's own."""
    own = policy.destination
    if own is None or own is console:
        return StreamPolicy(capture=policy.capture, destination=console)

    def both(chunk: bytes) -> None:
        own(chunk)
        console(chunk)

    return StreamPolicy(capture=policy.capture, destination=both)


class _Reader(threading.Thread):
    """Drains one pipe with blocking reads until EOF."""

    def __init__(self, pipe, policy: StreamPolicy):
        super().__init__(daemon=True)
        self.pipe = pipe
        self.policy = policy
        self.chunks: list[bytes] = []
        self.error: BaseException | None = None

    def run(self) -> None:
        with self.pipe:
            for chunk in iter(lambda: self.pipe.read1(CHUNK_SIZE), b""):
                if self.policy.capture:
                    self.chunks.append(chunk)
                if self.policy.destination is None or self.error is not None:
                    continue
                try:
                    self.policy.destination(chunk)
                except Exception as e:
                    # Re-raised by run() once the child exits; keep draining
                    # so it never blocks on a full pipe.
                    self.error = e

    def data(self) -> bytes:
        return b"".join(self.chunks)


def _popen_kwargs() -> dict:
    if IS_WINDOWS:
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    # The child leads its own session, so its pid is the group id even after
    # it has been reaped and only its descendants remain.
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass
    except OSError:
        if proc.poll() is not None:
            return
        if sig == signal.SIGKILL:
            proc.kill()
        else:
            proc.terminate()


def _terminate(proc: subprocess.Popen) -> None:
    """SIGTERM the child's process group, escalating to SIGKILL."""
    if proc.poll() is not None:
        return
    if IS_WINDOWS:
        proc.terminate()
    else:
        _signal_group(proc, signal.SIGTERM)
    try:
        proc.wait(timeout=TERM_TIMEOUT)
        return
    except subprocess.TimeoutExpired:
        pass
    if IS_WINDOWS:
        proc.kill()
    else:
        _signal_group(proc, signal.SIGKILL)
    try:
        proc.wait(timeout=KILL_TIMEOUT)
    except subprocess.TimeoutExpired:
        log.error(f"Process {proc.pid} did not exit after kill")


def _remaining(deadline: float | None) -> float | None:
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


def _timed_out(spec: CommandSpec, timeout: float | None) -> CommandCancelled:
    return CommandCancelled(spec.command_line, f"timed out after {timeout}s")


def _wait(
    proc: subprocess.Popen,
    spec: CommandSpec,
    timeout: float | None,
    deadline: float | None,
    cancel: threading.Event | None,
) -> int:
    if cancel is None:
        try:
            return proc.wait(timeout=_remaining(deadline))
        except subprocess.TimeoutExpired:
            raise _timed_out(spec, timeout) from None

    while True:
        if cancel.is_set():
            raise CommandCancelled(spec.command_line, "cancelled")
        remaining = _remaining(deadline)
        step = CANCEL_POLL if remaining is None else min(CANCEL_POLL, remaining)
        try:
            return proc.wait(timeout=step)
        except subprocess.TimeoutExpired:
            if remaining is not None and remaining <= step:
                raise _timed_out(spec, timeout) from None


def _drain(
    proc: subprocess.Popen,
    readers: list[_Reader],
    spec: CommandSpec,
    timeout: float | None,
    deadline: float | None,
) -> None:
    """Wait for the readers to hit EOF once the child itself has exited.

    Descendants that inherited the pipes can keep them open indefinitely.
    They get DRAIN_TIMEOUT (bounded by the caller's deadline), then the
    child's process group is killed. Running out of the caller's deadline
    here is still a timeout.
    """
    grace = time.monotonic() + DRAIN_TIMEOUT
    limit = grace if deadline is None else min(grace, deadline)
    for reader in readers:
        reader.join(timeout=max(0.0, limit - time.monotonic()))
    if not any(r.is_alive() for r in readers):
        return

    if not IS_WINDOWS:
        _signal_group(proc, signal.SIGKILL)
    for reader in readers:
        reader.join(timeout=KILL_TIMEOUT)
    if deadline is not None and time.monotonic() >= deadline:
        raise _timed_out(spec, timeout)


def run(
    spec: CommandSpec,
    policy: OutputPolicy | None = None,
    *,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
    trace: bool | None = None,
) -> ExecutionResult:
    """Run a command to completion. A nonzero exit is a result, not an error.

    Both pipes are drained by their own reader thread so a child blocked on a
    full stderr pipe can never stall stdout (or the other way round). When
    tracing, the command is echoed and both streams also go to the console;
    capture and the caller's own destinations still follow ``policy``.

    Raises LaunchError if the process cannot be started and CommandCancelled if
    ``timeout`` expires or ``cancel`` is set before it exits. ``timeout``
    covers draining the pipes as well as the child's own run time.
    """
    policy = policy or OutputPolicy()
    if trace is None:
        trace = trace_enabled()

    out_policy, err_policy = policy.stdout, policy.stderr
    if trace:
        out_policy = _with_console(out_policy, console_stdout)
        err_policy = _with_console(err_policy, console_stderr)
        log.command(spec.command_line, cwd=os.path.abspath(spec.cwd or os.getcwd()))

    deadline = None if timeout is None else time.monotonic() + timeout
    try:
        proc = subprocess.Popen(
            spec.argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE if out_policy.active else subprocess.DEVNULL,
            stderr=subprocess.PIPE if err_policy.active else subprocess.DEVNULL,
            cwd=spec.cwd,
            env=spec.merged_env(),
            **_popen_kwargs(),
        )
    except OSError as e:
        raise LaunchError(spec.command_line, e) from e

    out_reader = _Reader(proc.stdout, out_policy) if proc.stdout is not None else None
    err_reader = _Reader(proc.stderr, err_policy) if proc.stderr is not None else None
    readers = [r for r in (out_reader, err_reader) if r is not None]
    for reader in readers:
        reader.start()

    try:
        returncode = _wait(proc, spec, timeout, deadline, cancel)
    except BaseException:
        _terminate(proc)
        for reader in readers:
            reader.join(timeout=KILL_TIMEOUT)
        raise

    _drain(proc, readers, spec, timeout, deadline)
    for reader in readers:
        if reader.error is not None:
            raise reader.error

    return ExecutionResult(
        returncode=returncode,
        stdout=out_reader.data() if out_reader else b"",
        stderr=err_reader.data() if err_reader else b"",
    )


def run_checked(
    spec: CommandSpec, policy: OutputPolicy | None = None, **kwargs
) -> str:
    """Run a command, raising CommandFailed on nonzero exit. Returns captured stdout."""
    result = run(spec, policy or CHECKED_POLICY, **kwargs)
    if result.returncode != 0:
        raise CommandFailed(spec.command_line, result.returncode, result.error_text())
    return result.text()


def run_expecting(
    spec: CommandSpec,
    expected=(0,),
    policy: OutputPolicy | None = None,
    **kwargs,
) -> ExecutionResult:
    """Run a command, raising CommandFailed only if the exit code is not in ``expected``."""
    result = run(spec, policy, **kwargs)
    if result.returncode not in expected:
        raise CommandFailed(spec.command_line, result.returncode, result.error_text())
    return result
