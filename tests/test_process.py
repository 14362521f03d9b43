"""Tests for process.py — subprocess wrapper."""

import os
import sys
import threading
import time

import pytest

from repo_setup import process
from repo_setup.process import (
    CommandCancelled,
    CommandFailed,
    CommandSpec,
    ExecutionResult,
    LaunchError,
    OutputPolicy,
    capture,
    capture_and_forward,
    console_stdout,
    forward,
    run,
    run_checked,
    run_expecting,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell commands")

CAPTURE_BOTH = OutputPolicy(stdout=capture(), stderr=capture())


def sh(script: str, **kwargs) -> CommandSpec:
    return CommandSpec("sh", ("-c", script), **kwargs)


def py(code: str, *args: str) -> CommandSpec:
    return CommandSpec(sys.executable, ("-c", code, *args))


def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


def test_printf_hello_captured():
    result = run(CommandSpec("printf", ("hello",)), OutputPolicy(stdout=capture()))
    assert result == ExecutionResult(returncode=0, stdout=b"hello", stderr=b"")
    assert result.text() == "hello"


def test_captures_stderr():
    result = run(sh("echo err >&2"), CAPTURE_BOTH)
    assert result.stdout == b""
    assert result.error_text().strip() == "err"


def test_nonzero_exit_is_a_result():
    result = run(sh("exit 42"))
    assert result.returncode == 42
    assert not result.ok


def test_discard_captures_nothing():
    result = run(sh("echo out; echo err >&2"))
    assert result.returncode == 0
    assert result.stdout == b""
    assert result.stderr == b""


def test_env_overlay():
    result = run(sh("echo $TEST_VAR", env={"TEST_VAR": "works"}), CAPTURE_BOTH)
    assert result.text().strip() == "works"


def test_env_overlay_keeps_inherited(monkeypatch):
    monkeypatch.setenv("INHERITED_VAR", "kept")
    result = run(sh("echo $INHERITED_VAR-$TEST_VAR", env={"TEST_VAR": "x"}), CAPTURE_BOTH)
    assert result.text().strip() == "kept-x"


def test_working_directory(tmp_path):
    result = run(CommandSpec("pwd", cwd=str(tmp_path)), CAPTURE_BOTH)
    assert os.path.realpath(result.text().strip()) == os.path.realpath(tmp_path)


def test_missing_executable_raises_launch_error():
    with pytest.raises(LaunchError) as exc:
        run(CommandSpec("definitely-not-a-real-binary-xyz"))
    assert not isinstance(exc.value, CommandFailed)
    assert "definitely-not-a-real-binary-xyz" in str(exc.value)


def test_missing_working_directory_raises_launch_error(tmp_path):
    with pytest.raises(LaunchError):
        run(CommandSpec("true", cwd=str(tmp_path / "missing")))


def test_not_executable_raises_launch_error(tmp_path):
    script = tmp_path / "script.sh"
    script.write_text("#!/bin/sh\necho hi\n")
    script.chmod(0o644)
    with pytest.raises(LaunchError):
        run(CommandSpec(str(script)))


def test_run_checked_returns_stdout():
    assert run_checked(CommandSpec("printf", ("hello",))) == "hello"


def test_run_checked_raises_with_exit_code():
    with pytest.raises(CommandFailed) as exc:
        run_checked(sh("exit 3"))
    assert exc.value.returncode == 3
    assert exc.value.command_line == "sh -c 'exit 3'"


def test_run_checked_includes_captured_stderr():
    with pytest.raises(CommandFailed) as exc:
        run_checked(sh("echo broken >&2; exit 1"), CAPTURE_BOTH)
    assert exc.value.stderr.strip() == "broken"
    assert "broken" in str(exc.value)


def test_run_checked_discarded_output_is_empty():
    assert run_checked(sh("echo hi"), OutputPolicy()) == ""


def test_run_expecting_accepts_listed_code():
    result = run_expecting(sh("exit 2"), expected={0, 2})
    assert result.returncode == 2


def test_run_expecting_rejects_other_code():
    with pytest.raises(CommandFailed) as exc:
        run_expecting(sh("exit 1"), expected={0, 2})
    assert exc.value.returncode == 1


def test_interleaved_streams_are_complete_and_ordered():
    count = 20000
    code = (
        "import sys\n"
        "out, err = sys.stdout.buffer, sys.stderr.buffer\n"
        f"for i in range({count}):\n"
        "    out.write(b'o%05d\\n' % i); out.flush()\n"
        "    err.write(b'e%05d\\n' % i); err.flush()\n"
    )
    result = run(py(code), CAPTURE_BOTH)

    expected_out = b"".join(b"o%05d\n" % i for i in range(count))
    expected_err = b"".join(b"e%05d\n" % i for i in range(count))
    assert result.returncode == 0
    assert len(result.stdout) == len(expected_out)
    assert len(result.stderr) == len(expected_err)
    assert result.stdout == expected_out
    assert result.stderr == expected_err


def test_large_stderr_does_not_deadlock():
    # Far more than a pipe buffer on stderr while stdout stays quiet.
    code = "import sys; sys.stderr.write('x' * 1000000); print('done')"
    result = run(py(code), CAPTURE_BOTH, timeout=30)
    assert result.text().strip() == "done"
    assert len(result.stderr) == 1000000


def test_capture_and_forward_sees_same_bytes():
    forwarded = []
    policy = OutputPolicy(stdout=capture_and_forward(forwarded.append))
    result = run(sh("echo one; echo two"), policy)
    assert result.stdout == b"one\ntwo\n"
    assert b"".join(forwarded) == result.stdout


def test_forward_to_console(capsys):
    run(sh("echo hi"), OutputPolicy(stdout=forward(console_stdout)))
    assert capsys.readouterr().out == "hi\n"


def test_destination_error_propagates_after_draining():
    def boom(chunk):
        raise ValueError("sink failed")

    code = "import sys; sys.stdout.write('x' * 1000000)"
    with pytest.raises(ValueError, match="sink failed"):
        run(py(code), OutputPolicy(stdout=forward(boom)), timeout=30)


def test_trace_echoes_and_forwards(capsys, tmp_path):
    result = run(CommandSpec("printf", ("hello",), cwd=str(tmp_path)), trace=True)
    out = capsys.readouterr().out
    assert f"$ (pwd) {tmp_path}" in out
    assert "$ printf hello" in out
    assert "hello" in out.splitlines()[-1]
    assert result.stdout == b""


def test_trace_still_captures(capsys):
    result = run(CommandSpec("printf", ("hello",)), OutputPolicy(stdout=capture()), trace=True)
    assert result.stdout == b"hello"
    assert "hello" in capsys.readouterr().out


def test_trace_from_environment(capsys, monkeypatch):
    monkeypatch.setenv(process.TRACE_ENV, "true")
    run(CommandSpec("true"))
    assert "$ true" in capsys.readouterr().out


def test_trace_disabled_by_default(capsys):
    run(CommandSpec("printf", ("hello",)))
    assert capsys.readouterr().out == ""


def _sleeper(pidfile):
    code = (
        "import os, sys, time\n"
        "with open(sys.argv[1], 'w') as f:\n"
        "    f.write(str(os.getpid()))\n"
        "time.sleep(30)\n"
    )
    return py(code, str(pidfile))


def test_timeout_terminates_child(tmp_path):
    pidfile = tmp_path / "pid"
    start = time.time()
    with pytest.raises(CommandCancelled, match="timed out"):
        run(_sleeper(pidfile), timeout=3)
    assert time.time() - start < 20
    assert not _alive(int(pidfile.read_text()))


def test_cancel_event_terminates_child(tmp_path):
    pidfile = tmp_path / "pid"
    cancel = threading.Event()

    def cancel_once_started():
        deadline = time.time() + 10
        while not (pidfile.exists() and pidfile.read_text()) and time.time() < deadline:
            time.sleep(0.01)
        cancel.set()

    threading.Thread(target=cancel_once_started, daemon=True).start()
    with pytest.raises(CommandCancelled, match="cancelled"):
        run(_sleeper(pidfile), OutputPolicy(stdout=capture()), cancel=cancel)
    assert not _alive(int(pidfile.read_text()))


def test_unset_cancel_event_lets_command_finish():
    spec = CommandSpec("printf", ("ok",))
    result = run(spec, OutputPolicy(stdout=capture()), cancel=threading.Event())
    assert result.text() == "ok"


def test_command_line_quotes_whitespace():
    spec = CommandSpec("git", ("commit", "-m", "two words"))
    assert spec.argv == ["git", "commit", "-m", "two words"]
    assert spec.command_line == "git commit -m 'two words'"


def test_merged_env_none_without_overlay():
    assert CommandSpec("true").merged_env() is None


def test_trace_keeps_caller_destination(capsys):
    forwarded = []
    policy = OutputPolicy(stdout=forward(forwarded.append))
    result = run(CommandSpec("printf", ("hello",)), policy, trace=True)
    assert b"".join(forwarded) == b"hello"
    assert result.stdout == b""
    assert capsys.readouterr().out.endswith("hello")


def test_trace_does_not_echo_console_twice(capsys):
    policy = OutputPolicy(stdout=forward(console_stdout))
    run(sh("printf %s \"$WORD\"", env={"WORD": "unique-token"}), policy, trace=True)
    assert capsys.readouterr().out.count("unique-token") == 1


def test_background_grandchild_does_not_outlive_timeout():
    start = time.time()
    with pytest.raises(CommandCancelled, match="timed out"):
        run(sh("sleep 30 & echo hi"), OutputPolicy(stdout=capture()), timeout=1)
    assert time.time() - start < 5


def test_background_grandchild_released_after_exit(monkeypatch):
    monkeypatch.setattr(process, "DRAIN_TIMEOUT", 0.5)
    start = time.time()
    result = run(sh("sleep 30 & echo hi"), OutputPolicy(stdout=capture()))
    assert time.time() - start < 5
    assert result.returncode == 0
    assert result.stdout == b"hi\n"
