"""
Shared pytest fixtures: isolated settings, a project directory, a job
store and a scripted execution provider.
"""

import asyncio

import pytest

import registry
from agent import AssistantText
from api.job_store import JobStore
from api.models import Job
from parallel_orchestrator import AutoModeOrchestrator


# Placeholder in a script: block until the job is cancelled
WAIT_FOR_CANCEL = object()


class ScriptedProvider:
    """Execution provider that replays scripted event lists, one per call."""

    name = "scripted"

    def __init__(self, *scripts):
        self.scripts = list(scripts)
        self.requests = []

    async def execute_query(self, request):
        self.requests.append(request)
        script = self.scripts.pop(0) if self.scripts else [AssistantText("Done.")]
        if callable(script):
            script = script(request)
        for item in script:
            await asyncio.sleep(0)
            if item is WAIT_FOR_CANCEL:
                await request.cancel_token.wait()
                request.cancel_token.raise_if_cancelled()
            elif isinstance(item, Exception):
                raise item
            else:
                yield item

    @property
    def prompts(self):
        return [r.prompt for r in self.requests]


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point the settings registry at a temporary directory."""
    monkeypatch.setenv("FEATUREFORGE_CONFIG_DIR", str(tmp_path / "config"))
    monkeypatch.delenv("FEATUREFORGE_DEBUG_RAW_OUTPUT", raising=False)
    registry.reset_engine()
    yield
    registry.reset_engine()


@pytest.fixture
def project_dir(tmp_path):
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def store():
    return JobStore()


@pytest.fixture
def make_job(store, project_dir):
    """Create and persist a job in the project."""
    def _make(job_id="feat-1", **fields):
        fields.setdefault("description", f"Implement {job_id}")
        return store.create(project_dir, Job(id=job_id, **fields))
    return _make


@pytest.fixture
def scripted_provider():
    return ScriptedProvider


@pytest.fixture
def wait_for_cancel():
    return WAIT_FOR_CANCEL


@pytest.fixture
def make_orchestrator(store):
    """Build an orchestrator with short loop sleeps and no worktree lookup."""
    def _make(provider, **kwargs):
        kwargs.setdefault("use_worktrees", False)
        kwargs.setdefault("raw_output_enabled", False)
        for name in ("capacity_sleep", "idle_sleep", "launch_sleep", "error_sleep"):
            kwargs.setdefault(name, 0.01)
        return AutoModeOrchestrator(store=store, provider=provider, **kwargs)
    return _make


@pytest.fixture
def recorded_events():
    """Subscribe to an orchestrator's events; returns (attach, payload list)."""
    payloads = []

    def attach(orchestrator):
        orchestrator.events.subscribe(lambda name, payload: payloads.append(payload))
        return payloads
    return attach
