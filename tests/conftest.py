"""
Test fixtures and configuration for pytest.
"""

from typing import Optional
from unittest.mock import MagicMock

import pytest

from lmserve.models import DeploymentSpec, EnvironmentSnapshot, VolumeMount

IMAGE = "ollama/ollama:latest"


class FakeClock:
    """Monotonic clock advanced only by its own sleep()."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_container(
    name: str = "lmserve-ollama",
    status: str = "running",
    image: str = IMAGE,
    host_port: Optional[int] = 11434,
    exit_code: int = 0,
    container_id: str = "c0ffee0000000000000000000000000000000000000000000000000000000000",
) -> MagicMock:
    """Build a docker-py Container lookalike."""
    bindings = [{"HostIp": "0.0.0.0", "HostPort": str(host_port)}] if host_port else []
    container = MagicMock()
    container.id = container_id
    container.short_id = container_id[:10]
    container.name = name
    container.status = status
    container.image.tags = [image]
    container.attrs = {
        "Config": {"Image": image},
        "State": {"Status": status, "ExitCode": exit_code},
        "NetworkSettings": {"Ports": {"11434/tcp": bindings} if status == "running" else {}},
        "HostConfig": {"PortBindings": {"11434/tcp": bindings}},
    }
    return container


@pytest.fixture
def spec() -> DeploymentSpec:
    """Default GPU deployment of the Ollama image."""
    return DeploymentSpec(
        image_reference=IMAGE,
        exposed_port=11434,
        volume_mount=VolumeMount(source="ollama", destination="/root/.ollama"),
    )


@pytest.fixture
def gpu_snapshot() -> EnvironmentSnapshot:
    """Host with a driver and the NVIDIA runtime registered."""
    return EnvironmentSnapshot(
        driver_present=True,
        driver_version="550.54.14",
        runtime_gpu_enabled=True,
        capability_tags=frozenset({"gpu", "runtime:nvidia"}),
    )


@pytest.fixture
def docker_client() -> MagicMock:
    """Docker client with no containers and the image already present."""
    client = MagicMock()
    client.containers.list.return_value = []
    client.info.return_value = {"Runtimes": {"runc": {}, "nvidia": {}}, "DefaultRuntime": "runc"}
    return client


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def container_factory():
    """Factory for docker-py Container lookalikes."""
    return make_container
