"""Git repository handle — builds git argv and runs it through process."""

import os
import threading
from pathlib import Path
from typing import Mapping

from repo_setup import process
from repo_setup.process import (
    CommandSpec,
    ExecutionResult,
    OutputPolicy,
    capture,
    console_stderr,
    console_stdout,
    discard,
    forward,
)

GIT = "git"
BASE_ARGS = ("-c", "commit.gpgsign=false", "-c", "core.safecrlf=false")


class GitNotFound(process.ProcessError):
    def __init__(self):
        super().__init__("You must have git installed and available on your PATH.")


def _silenced(silence_out: bool, silence_err: bool) -> OutputPolicy:
    # Silenced stderr is still captured so CommandFailed can report it.
    return OutputPolicy(
        stdout=discard() if silence_out else forward(console_stdout),
        stderr=capture() if silence_err else forward(console_stderr),
    )


CONSOLE = OutputPolicy(stdout=forward(console_stdout), stderr=forward(console_stderr))


class Git:
    """A git working directory plus the environment every command runs with."""

    def __init__(
        self,
        repo: str | os.PathLike,
        env: Mapping[str, str] | None = None,
        *,
        trace: bool | None = None,
    ):
        self.repo = Path(repo)
        if not self.repo.exists():
            raise FileNotFoundError(f"Git directory does not exist: {self.repo}")
        self.env = dict(env or {})
        self.trace = trace

    def with_env(self, env: Mapping[str, str]) -> "Git":
        return Git(self.repo, env, trace=self.trace)

    def command(self, *args: str) -> CommandSpec:
        return CommandSpec(
            executable=GIT,
            args=(*BASE_ARGS, *args),
            cwd=str(self.repo),
            env=self.env,
        )

    def run(
        self,
        *args: str,
        policy: OutputPolicy | None = None,
        cancel: threading.Event | None = None,
    ) -> ExecutionResult:
        return process.run(self.command(*args), policy, cancel=cancel, trace=self.trace)

    def run_silently(self, *args: str, silence_out: bool = True, silence_err: bool = False) -> int:
        return self.run(*args, policy=_silenced(silence_out, silence_err)).returncode

    def run_out(self, *args: str) -> int:
        return self.run(*args, policy=CONSOLE).returncode

    def execute(self, *args: str, policy: OutputPolicy | None = None) -> None:
        """Run and raise CommandFailed on a nonzero exit."""
        process.run_expecting(self.command(*args), (0,), policy, trace=self.trace)

    def execute_silently(
        self, *args: str, silence_out: bool = True, silence_err: bool = False
    ) -> None:
        self.execute(*args, policy=_silenced(silence_out, silence_err))

    def execute_out(self, *args: str) -> None:
        self.execute(*args, policy=CONSOLE)

    def get_text(self, *args: str) -> str:
        return process.run_checked(self.command(*args), trace=self.trace)

    def read_text(self, *args: str) -> str | None:
        """Stdout of the command, or None if it failed."""
        result = self.run(
            *args, policy=OutputPolicy(stdout=capture(), stderr=forward(console_stderr))
        )
        return result.text() if result.ok else None

    def capture_out(self, *args: str, log_out: bool = False) -> ExecutionResult:
        """Run with stdout and stderr merged into ``stdout`` of the result."""
        merged = bytearray()
        lock = threading.Lock()

        def collect(chunk: bytes) -> None:
            with lock:
                merged.extend(chunk)
                if log_out:
                    console_stdout(chunk)

        sink = forward(collect)
        result = self.run(*args, policy=OutputPolicy(stdout=sink, stderr=sink))
        return ExecutionResult(returncode=result.returncode, stdout=bytes(merged))

    def disable_auto_gpg_signing(self) -> None:
        self.execute_silently("config", "commit.gpgSign", "false", silence_err=True)
        self.execute_silently("config", "tag.gpgSign", "false", silence_err=True)


def add_args(ignore_gitignore: bool, *paths: str) -> list[str]:
    """Arguments for ``git add``, forcing ignored files in when asked."""
    if ignore_gitignore:
        return ["add", "--force", *paths]
    return ["add", *paths]


def check_for_git() -> bool:
    """True if a working git binary is on PATH."""
    spec = CommandSpec(executable=GIT, args=("--version",))
    try:
        result = process.run(spec)
    except process.LaunchError:
        return False
    return result.returncode == 0


def require_git() -> None:
    if not check_for_git():
        raise GitNotFound()


def is_git_repo(directory: str | os.PathLike) -> bool:
    """True if ``git status`` succeeds in ``directory``."""
    spec = CommandSpec(executable=GIT, args=("status",), cwd=str(directory))
    try:
        result = process.run(spec)
    except process.LaunchError:
        return False
    return result.returncode == 0
