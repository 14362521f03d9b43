"""Shared test fixtures."""

import pytest


@pytest.fixture
def mock_process(monkeypatch):
    """Mock process.run for tests. Queue ExecutionResults on .responses."""
    from repo_setup import process

    calls = []
    responses = []

    def fake_run(spec, policy=None, **kwargs):
        calls.append(("run", spec, policy, kwargs))
        if responses:
            return responses.pop(0)
        return process.ExecutionResult(returncode=0)

    monkeypatch.setattr(process, "run", fake_run)

    def argvs():
        return [c[1].argv for c in calls]

    return type(
        "MockProcess",
        (),
        {"calls": calls, "responses": responses, "argvs": staticmethod(argvs)},
    )()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("REPO_SETUP_DEBUG", raising=False)
    monkeypatch.delenv("REPO_SETUP_IGNORE_GITIGNORE", raising=False)
    monkeypatch.delenv("GITHUB_ACTIONS", raising=False)
