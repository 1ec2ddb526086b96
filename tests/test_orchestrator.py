"""
Tests for the orchestration state machine.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from lmserve.docker_ops.gpu import EnvironmentProber
from lmserve.exceptions import (
    HealthCheckTimeoutError,
    InvalidTransitionError,
    LaunchError,
    PortConflictError,
)
from lmserve.health import HealthVerifier
from lmserve.locking import DeploymentLock
from lmserve.models import (
    ContainerState,
    ContainerStatus,
    EnvironmentSnapshot,
    HealthStatus,
    OrchestratorState,
    PullStatus,
)
from lmserve.orchestrator import Orchestrator
from lmserve.registry import ModelRegistryClient

BASE_URL = "http://ollama.test:11434"

S = OrchestratorState


def ollama_api(resident=()):
    """Healthy server where qwen2:0.5b pulls and anything else is an unknown tag."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/version":
            return httpx.Response(200, json={"version": "0.3.12"})
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": n, "size": 10} for n in resident]})
        if request.url.path == "/api/pull":
            name = json.loads(request.content)["name"]
            if name == "qwen2:0.5b":
                lines = [
                    {"status": "pulling abc", "total": 100, "completed": 100},
                    {"status": "success"},
                ]
            else:
                lines = [{"error": "pull model manifest: file does not exist"}]
            return httpx.Response(200, content="".join(json.dumps(x) + "\n" for x in lines))
        return httpx.Response(404)

    return handler


@pytest.fixture
def prober(gpu_snapshot):
    prober = MagicMock(spec=EnvironmentProber)
    prober.probe.return_value = gpu_snapshot
    return prober


@pytest.fixture
def containers():
    manager = MagicMock()
    manager.ensure_running = AsyncMock(
        return_value=ContainerState(id="abc", name="lmserve-ollama", status=ContainerStatus.RUNNING)
    )
    manager.stop = AsyncMock(
        return_value=ContainerState(id="abc", name="lmserve-ollama", status=ContainerStatus.STOPPED)
    )
    return manager


@pytest.fixture
def build(spec, prober, containers, clock, tmp_path):
    """Build an orchestrator against the fake Ollama API."""

    def _build(models=(), resident=(), handler=None, **kwargs):
        transport = httpx.MockTransport(handler or ollama_api(resident))
        return Orchestrator(
            spec=spec,
            prober=prober,
            containers=containers,
            health=HealthVerifier(BASE_URL, transport=transport, clock=clock, sleep=clock.sleep),
            registry=ModelRegistryClient(BASE_URL, transport=transport),
            models_to_ensure=models,
            health_timeout=5,
            health_poll_interval=1,
            lock_dir=tmp_path,
            **kwargs,
        )

    return _build


def states(report):
    return [report.history[0].source] + [t.target for t in report.history]


class TestHappyPath:
    """Idle -> ... -> Ready."""

    @pytest.mark.asyncio
    async def test_full_run(self, build, containers, gpu_snapshot):
        orchestrator = build(models=["qwen2:0.5b"])
        assert orchestrator.state == S.IDLE

        report = await orchestrator.run()

        assert report.state == S.READY
        assert report.exit_code == 0
        assert states(report) == [
            S.IDLE,
            S.PROBING,
            S.LAUNCHING,
            S.AWAITING_HEALTH,
            S.SYNCING_MODELS,
            S.READY,
        ]
        assert report.health.reported_version == "0.3.12"
        assert report.environment == gpu_snapshot
        assert [m.pull_status for m in report.models] == [PullStatus.READY]
        launched_spec = containers.ensure_running.call_args.args[0]
        assert launched_spec.gpu_reservation is not None

    @pytest.mark.asyncio
    async def test_partial_model_failure_still_ready(self, build):
        report = await build(models=["qwen2:0.5b", "bad-tag"]).run()

        assert report.state == S.READY
        by_name = {m.name: m for m in report.models}
        assert by_name["qwen2:0.5b"].pull_status == PullStatus.READY
        assert by_name["bad-tag"].pull_status == PullStatus.FAILED
        assert "file does not exist" in by_name["bad-tag"].diagnostic
        assert [m.name for m in report.failed_models] == ["bad-tag"]

    @pytest.mark.asyncio
    async def test_resident_models_not_pulled(self, build):
        pulled = []
        inner = ollama_api(resident=["llama3.2:latest"])

        def handler(request):
            if request.url.path == "/api/pull":
                pulled.append(json.loads(request.content)["name"])
            return inner(request)

        report = await build(models=["llama3.2", "qwen2:0.5b"], handler=handler).run()

        assert pulled == ["qwen2:0.5b"]
        assert all(m.pull_status == PullStatus.READY for m in report.models)
        assert report.models[0].name == "llama3.2"

    @pytest.mark.asyncio
    async def test_no_models_requested(self, build):
        report = await build().run()

        assert report.state == S.READY
        assert report.models == []


class TestProbing:
    """GPU policy at the Probing step."""

    @pytest.mark.asyncio
    async def test_mandatory_gpu_without_driver_fails(self, build, docker_client, containers):
        prober = EnvironmentProber(docker_client)
        prober._detect_driver = lambda: (False, None, [])
        orchestrator = build(gpu_mandatory=True)
        orchestrator.prober = prober

        report = await orchestrator.run()

        assert report.state == S.FAILED
        assert report.failed_state == S.PROBING
        assert report.error.error_type == "driver_not_found"
        assert report.exit_code == 10
        assert "driver" in report.error.remediation.lower()
        containers.ensure_running.assert_not_called()

    @pytest.mark.asyncio
    async def test_mandatory_gpu_with_driver_launches(self, build, docker_client):
        prober = EnvironmentProber(docker_client)
        prober._detect_driver = lambda: (True, "550.54.14", [])
        orchestrator = build(gpu_mandatory=True)
        orchestrator.prober = prober

        report = await orchestrator.run()

        assert report.history[1].source == S.PROBING
        assert report.history[1].target == S.LAUNCHING

    @pytest.mark.asyncio
    async def test_mandatory_gpu_runtime_missing_fails(self, build, docker_client):
        docker_client.info.return_value = {"Runtimes": {"runc": {}}}
        prober = EnvironmentProber(docker_client)
        prober._detect_driver = lambda: (True, "550.54.14", [])
        orchestrator = build(gpu_mandatory=True)
        orchestrator.prober = prober

        report = await orchestrator.run()

        assert report.failed_state == S.PROBING
        assert report.error.error_type == "runtime_gpu_disabled"
        assert report.exit_code == 11

    @pytest.mark.asyncio
    async def test_optional_gpu_falls_back_to_cpu(self, build, prober, containers):
        prober.probe.return_value = EnvironmentSnapshot(driver_present=False)

        report = await build(gpu_mandatory=False).run()

        assert report.state == S.READY
        prober.probe.assert_called_once_with(False)
        launched_spec = containers.ensure_running.call_args.args[0]
        assert launched_spec.gpu_reservation is None


class TestFailures:
    """Failed is reachable from every working state and is terminal."""

    @pytest.mark.asyncio
    async def test_launch_failure(self, build, containers):
        containers.ensure_running.side_effect = PortConflictError(11434)

        report = await build(models=["qwen2:0.5b"]).run()

        assert report.state == S.FAILED
        assert report.failed_state == S.LAUNCHING
        assert report.error.error_type == "port_conflict"
        assert report.exit_code == 21
        assert report.models == []

    @pytest.mark.asyncio
    async def test_health_timeout(self, build, clock):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        report = await build(handler=handler).run()

        assert report.failed_state == S.AWAITING_HEALTH
        assert report.error.error_type == "health_timeout"
        assert report.exit_code == 30
        assert clock.now >= 5

    @pytest.mark.asyncio
    async def test_failed_run_cannot_be_rerun(self, build, containers):
        containers.ensure_running.side_effect = LaunchError("boom")
        orchestrator = build()

        report = await orchestrator.run()
        assert report.state == S.FAILED

        with pytest.raises(InvalidTransitionError):
            await orchestrator.run()

    @pytest.mark.asyncio
    async def test_concurrent_run_on_same_target_is_locked(self, build, spec, tmp_path, containers):
        with DeploymentLock(spec.lock_key, tmp_path):
            report = await build().run()

        assert report.state == S.FAILED
        assert report.failed_state == S.IDLE
        assert report.error.error_type == "deployment_locked"
        containers.ensure_running.assert_not_called()

    @pytest.mark.asyncio
    async def test_lock_released_after_run(self, build, spec, tmp_path):
        orchestrator = build()
        await orchestrator.run()

        assert not orchestrator.lock.held
        with DeploymentLock(spec.lock_key, tmp_path):
            pass


class TestUnexpectedReplies:
    """Malformed server replies never leave a run half-finished."""

    @pytest.mark.asyncio
    async def test_html_tags_response_pulls_everything(self, build):
        inner = ollama_api()

        def handler(request):
            if request.url.path == "/api/tags":
                return httpx.Response(200, content=b"<html>proxy</html>")
            return inner(request)

        report = await build(models=["qwen2:0.5b"], handler=handler).run()

        assert report.state == S.READY
        assert [m.pull_status for m in report.models] == [PullStatus.READY]

    @pytest.mark.asyncio
    async def test_unexpected_error_ends_in_failed(self, build, monkeypatch):
        orchestrator = build(models=["qwen2:0.5b"])

        async def broken_pull(name, timeout):
            raise RuntimeError("registry exploded")

        monkeypatch.setattr(orchestrator.registry, "pull", broken_pull)

        report = await orchestrator.run()

        assert report.state == S.FAILED
        assert report.failed_state == S.SYNCING_MODELS
        assert report.error.error_type == "internal_error"
        assert "registry exploded" in report.error.message
        assert report.exit_code == 1
        assert not orchestrator.lock.held


class TestConcurrency:
    """Bounded parallel pulls."""

    @pytest.mark.asyncio
    async def test_max_parallel_pulls(self, build, monkeypatch):
        orchestrator = build(models=["a", "b", "c", "d"], max_parallel_pulls=2)
        active = {"now": 0, "peak": 0}
        original = orchestrator.registry.pull

        async def tracking_pull(name, timeout):
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
            try:
                return await original(name, timeout)
            finally:
                active["now"] -= 1

        monkeypatch.setattr(orchestrator.registry, "pull", tracking_pull)

        report = await orchestrator.run()

        assert report.state == S.READY
        assert len(report.models) == 4
        assert active["peak"] == 2


@pytest.mark.asyncio
async def test_teardown_stops_container(build, containers):
    state = await build().teardown(remove=False)

    containers.stop.assert_awaited_once_with("lmserve-ollama", remove=False)
    assert state.status == ContainerStatus.STOPPED


@pytest.mark.asyncio
async def test_health_status_recorded(build):
    report = await build().run()

    assert isinstance(report.health, HealthStatus)
    assert report.health.attempt_count == 1


def test_invalid_parallelism(spec, prober, containers, tmp_path):
    with pytest.raises(ValueError):
        Orchestrator(
            spec=spec,
            prober=prober,
            containers=containers,
            health=MagicMock(),
            registry=MagicMock(),
            max_parallel_pulls=0,
            lock_dir=tmp_path,
        )


def test_health_timeout_error_exit_code():
    assert HealthCheckTimeoutError("http://x", 5).exit_code == 30
