"""
Tests for GPU driver and runtime probing.
"""

import subprocess

import pytest
from docker.errors import DockerException

from lmserve.docker_ops import gpu as gpu_module
from lmserve.docker_ops.gpu import EnvironmentProber
from lmserve.exceptions import DriverNotFoundError, RuntimeGpuDisabledError

NVIDIA_SMI_OUTPUT = (
    "0, NVIDIA GeForce RTX 4090, 550.54.14, 24564, 1024, 23540\n"
    "1, NVIDIA GeForce RTX 4090, 550.54.14, 24564, [N/A], [N/A]\n"
)


@pytest.fixture(autouse=True)
def no_nvml(monkeypatch):
    """Force the nvidia-smi path regardless of what is installed."""
    monkeypatch.setattr(EnvironmentProber, "_detect_nvidia_pynvml", lambda self: None)


@pytest.fixture
def nvidia_smi(monkeypatch):
    def fake_run(cmd, **kwargs):
        return subprocess.CompletedProcess(cmd, 0, stdout=NVIDIA_SMI_OUTPUT, stderr="")

    monkeypatch.setattr(gpu_module.subprocess, "run", fake_run)


@pytest.fixture
def no_driver(monkeypatch):
    def fake_run(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(gpu_module.subprocess, "run", fake_run)


class TestEnvironmentProber:
    """Driver/runtime detection and the mandatory-GPU policy."""

    def test_gpu_ready_host(self, docker_client, nvidia_smi):
        snapshot = EnvironmentProber(docker_client).probe()

        assert snapshot.driver_present is True
        assert snapshot.driver_version == "550.54.14"
        assert snapshot.runtime_gpu_enabled is True
        assert "runtime:nvidia" in snapshot.capability_tags
        assert "gpu" in snapshot.capability_tags
        assert len(snapshot.gpus) == 2
        assert snapshot.gpus[0].memory_total == 24564 * 1024 * 1024
        assert snapshot.gpus[1].memory_used == 0

    def test_driver_missing_and_mandatory(self, docker_client, no_driver):
        with pytest.raises(DriverNotFoundError):
            EnvironmentProber(docker_client, gpu_mandatory=True).probe()

    def test_driver_missing_cpu_fallback(self, docker_client, no_driver):
        snapshot = EnvironmentProber(docker_client, gpu_mandatory=False).probe()

        assert snapshot.driver_present is False
        assert snapshot.driver_version is None
        assert snapshot.gpus == ()

    def test_runtime_not_configured_is_distinct_error(self, docker_client, nvidia_smi):
        docker_client.info.return_value = {"Runtimes": {"runc": {}}, "DefaultRuntime": "runc"}

        with pytest.raises(RuntimeGpuDisabledError) as exc_info:
            EnvironmentProber(docker_client).probe()

        assert exc_info.value.error_type == "runtime_gpu_disabled"
        assert exc_info.value.details["driver_version"] == "550.54.14"

    def test_runtime_not_configured_tolerated(self, docker_client, nvidia_smi):
        docker_client.info.return_value = {"Runtimes": {"runc": {}}, "DefaultRuntime": "runc"}

        snapshot = EnvironmentProber(docker_client).probe(gpu_mandatory=False)

        assert snapshot.driver_present is True
        assert snapshot.runtime_gpu_enabled is False
        assert not snapshot.gpu_usable

    def test_default_runtime_and_cdi_tags(self, docker_client, nvidia_smi):
        docker_client.info.return_value = {
            "Runtimes": {"nvidia": {}},
            "DefaultRuntime": "nvidia",
            "CDISpecDirs": ["/etc/cdi"],
        }

        snapshot = EnvironmentProber(docker_client).probe()

        expected = {"runtime:nvidia", "default-runtime:nvidia", "cdi", "gpu"}
        assert expected <= snapshot.capability_tags

    def test_cdi_alone_does_not_enable_gpu(self, docker_client, nvidia_smi):
        docker_client.info.return_value = {"Runtimes": {"runc": {}}, "CDISpecDirs": ["/etc/cdi"]}

        snapshot = EnvironmentProber(docker_client).probe(gpu_mandatory=False)

        assert snapshot.runtime_gpu_enabled is False
        assert snapshot.capability_tags == frozenset({"cdi"})

    def test_docker_unreachable(self, docker_client, nvidia_smi):
        docker_client.info.side_effect = DockerException("connection refused")

        with pytest.raises(RuntimeGpuDisabledError):
            EnvironmentProber(docker_client).probe()

    def test_probe_is_read_only(self, docker_client, nvidia_smi):
        EnvironmentProber(docker_client).probe()

        docker_client.containers.run.assert_not_called()
        docker_client.containers.create.assert_not_called()
