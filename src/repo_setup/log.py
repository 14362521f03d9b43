"""Timestamped build-log output + GitHub Actions formatting."""

import os
import sys
from contextlib import contextmanager
from datetime import datetime


def _timestamp() -> str:
    return datetime.now().strftime("%H:%M:%S")


def _is_github_actions() -> bool:
    return os.environ.get("GITHUB_ACTIONS") == "true"


def _rule(title: str) -> str:
    return f"── {title} " + "─" * max(0, 45 - len(title))


def info(msg: str) -> None:
    print(f"[{_timestamp()}] {msg}", flush=True)


def header(title: str) -> None:
    if _is_github_actions():
        print(f"::group::{title}", flush=True)
    info(_rule(title))


def footer(title: str) -> None:
    info(_rule(title))
    if _is_github_actions():
        print("::endgroup::", flush=True)


@contextmanager
def section(title: str):
    """Bracket a multi-step operation with header and footer.

    The footer (and the GitHub Actions group) is closed even when a step
    raises, with the title marked FAILED.
    """
    header(title)
    try:
        yield
    except BaseException:
        footer(f"{title} FAILED")
        raise
    footer(f"{title} complete")


def command(command_line: str, cwd: str) -> None:
    """Echo a command the way a shell transcript would show it."""
    print(flush=True)
    print(f"$ (pwd) {cwd}", flush=True)
    print(f"$ {command_line}", flush=True)


def step(msg: str) -> None:
    info(f"  {msg}")


def success(msg: str) -> None:
    info(f"  ✓ {msg}")


def failure(msg: str) -> None:
    if _is_github_actions():
        print(f"::error::{msg}", flush=True)
    info(f"  ✗ {msg}")


def error(msg: str) -> None:
    if _is_github_actions():
        print(f"::error::{msg}", flush=True)
    print(f"[{_timestamp()}] ERROR: {msg}", file=sys.stderr, flush=True)
