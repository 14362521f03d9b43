"""Idempotent checkout of a local repository from an upstream."""

import os
import time
from pathlib import Path

from repo_setup import log
from repo_setup.git import Git


def _upstream_uri(upstream: str | os.PathLike) -> str:
    """Local paths become file:// URIs; anything with a scheme passes through."""
    text = str(upstream)
    if "://" in text or text.startswith("git@"):
        return text
    return Path(text).resolve().as_uri()


def checkout_repo_from_upstream(
    git: Git,
    upstream: str | os.PathLike,
    upstream_branch: str,
    upstream_name: str = "upstream",
    branch_name: str = "master",
    ref: bool = False,
) -> None:
    """Point ``git.repo`` at ``upstream`` and hard-reset ``branch_name`` to it.

    Safe to re-run on an existing checkout: the remote is replaced, the local
    branch is created only if missing, and ``gc`` failures are ignored.
    Raises CommandFailed if init, remote add, fetch or reset fail.
    """
    start = time.time()
    target = upstream_branch if ref else f"{upstream_name}/{upstream_branch}"

    with log.section("checkout"):
        log.info(f"repo: {git.repo}")
        log.info(f"upstream: {upstream} ({target})")

        log.step("initializing repository...")
        git.execute_silently("init", "--quiet", silence_err=True)
        git.disable_auto_gpg_signing()

        log.step(f"configuring remote {upstream_name}...")
        git.run_silently("remote", "remove", upstream_name, silence_err=True)
        git.execute_silently(
            "remote", "add", upstream_name, _upstream_uri(upstream), silence_err=True
        )

        log.step(f"fetching {upstream_name}...")
        git.execute_silently(
            "fetch", upstream_name, "--prune", "--prune-tags", "--force", silence_err=True
        )

        if git.run_silently("checkout", branch_name, silence_err=True) != 0:
            log.step(f"creating branch {branch_name}")
            git.run_silently("checkout", "-b", branch_name, silence_err=True)

        log.step(f"resetting {branch_name} to {target}...")
        git.execute_silently("reset", "--hard", target, silence_err=True)

        git.run_silently("gc", silence_err=True)

        log.success(f"{branch_name} checked out ({time.time() - start:.1f}s)")
