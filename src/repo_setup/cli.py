"""Click entry point — all commands."""

import sys
from pathlib import Path

import click

from repo_setup import __version__, config, log, process
from repo_setup import checkout as checkout_mod
from repo_setup import git as git_mod


@click.group()
@click.version_option(version=__version__, prog_name="repo-setup")
@click.option("--debug", is_flag=True, help="Echo every git command and its output")
@click.option("--config", "config_path", default=None, help="Path to .repo-setup.yml")
@click.pass_context
def main(ctx, debug, config_path):
    """Set up local git checkouts from an upstream repository."""
    try:
        settings = config.load_settings(config_path)
    except ValueError as e:
        log.error(str(e))
        sys.exit(1)
    if debug:
        settings.debug = True
    ctx.obj = settings


def _git(settings: config.Settings, directory: str) -> git_mod.Git:
    try:
        return git_mod.Git(directory, settings.env, trace=settings.debug)
    except FileNotFoundError as e:
        log.error(str(e))
        sys.exit(1)


def _exit_with(repo: git_mod.Git, args) -> None:
    """Run git with console output and exit with its code."""
    try:
        code = repo.run_out(*args)
    except process.LaunchError as e:
        log.error(str(e))
        sys.exit(1)
    sys.exit(code)


@main.command()
def check():
    """Verify that git is installed and on PATH."""
    if not git_mod.check_for_git():
        log.error("git was not found on PATH")
        sys.exit(1)
    log.success("git is available")


@main.command()
@click.argument("upstream")
@click.argument("directory")
@click.option("--upstream-branch", default="main", help="Branch (or ref) to reset onto")
@click.option("--name", default=None, help="Remote name for the upstream")
@click.option("--branch", default=None, help="Local branch to check out")
@click.option("--ref", is_flag=True, help="Treat --upstream-branch as a plain ref")
@click.pass_obj
def checkout(settings, upstream, directory, upstream_branch, name, branch, ref):
    """Initialize DIRECTORY and hard-reset it to UPSTREAM."""
    try:
        git_mod.require_git()
    except git_mod.GitNotFound as e:
        log.error(str(e))
        sys.exit(1)

    Path(directory).mkdir(parents=True, exist_ok=True)
    repo = _git(settings, directory)
    try:
        checkout_mod.checkout_repo_from_upstream(
            repo,
            upstream,
            upstream_branch,
            upstream_name=name or settings.upstream_name,
            branch_name=branch or settings.branch,
            ref=ref,
        )
    except process.ProcessError as e:
        log.failure("checkout failed")
        log.error(str(e))
        sys.exit(1)


@main.command()
@click.argument("directory")
@click.argument("paths", nargs=-1, required=True)
@click.pass_obj
def add(settings, directory, paths):
    """Stage PATHS, forcing ignored files when ignore_gitignore is set."""
    repo = _git(settings, directory)
    _exit_with(repo, git_mod.add_args(settings.ignore_gitignore, *paths))


@main.command(name="git", context_settings={"ignore_unknown_options": True})
@click.argument("directory")
@click.argument("args", nargs=-1, type=click.UNPROCESSED)
@click.pass_obj
def git_cmd(settings, directory, args):
    """Run an arbitrary git command in DIRECTORY."""
    if not args:
        click.echo("Error: No git arguments specified", err=True)
        sys.exit(1)
    repo = _git(settings, directory)
    _exit_with(repo, args)


if __name__ == "__main__":
    main()
