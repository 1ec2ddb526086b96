"""Container lifecycle management for lmserve.

Provides idempotent launch, stop, status and log tailing for the inference
server container. The Docker SDK is synchronous, so every call runs in the
default executor and the event loop never blocks on the daemon.
"""

import asyncio
import functools
import logging
import socket
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any, Optional

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from ..exceptions import LaunchError, PortConflictError, RuntimeGpuDisabledError
from ..models import ContainerState, ContainerStatus, DeploymentSpec, EnvironmentSnapshot, utcnow

logger = logging.getLogger(__name__)

# Daemon messages that mean the host port is taken
PORT_CONFLICT_MARKERS = ("port is already allocated", "address already in use")


class ContainerLifecycleManager:
    """Docker container operations for the inference server."""

    MANAGED_LABEL = "lmserve.managed"
    SPEC_LABEL = "lmserve.port"

    def __init__(self, client: docker.DockerClient):
        self.client = client

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def ensure_running(
        self,
        spec: DeploymentSpec,
        snapshot: Optional[EnvironmentSnapshot] = None,
    ) -> ContainerState:
        """Make sure a container matching ``spec`` is running.

        Idempotent: a running container with the same name, image and port is
        returned unchanged.

        Raises:
            PortConflictError: The host port is bound by something else.
            RuntimeGpuDisabledError: A GPU reservation was requested but the
                snapshot shows no runtime GPU integration.
            LaunchError: The runtime rejected the container.
        """
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._ensure_running_sync, spec, snapshot)

    async def stop(
        self, container_id: str, timeout: int = 10, remove: bool = False
    ) -> ContainerState:
        """Stop a container, optionally removing it."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._stop_sync, container_id, timeout, remove)

    async def restart(self, container_id: str, timeout: int = 10) -> ContainerState:
        """Restart a container."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._restart_sync, container_id, timeout)

    async def status(self, container_id: str) -> ContainerState:
        """Query the runtime for the container's current state.

        Never cached: every call reloads from the daemon.
        """
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._status_sync, container_id)

    async def list_managed(self) -> list[ContainerState]:
        """List all lmserve-managed containers."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._list_managed_sync)

    async def tail_logs(
        self,
        container_id: str,
        tail: int = 100,
        follow: bool = True,
        timestamps: bool = False,
        reattach_interval: float = 1.0,
    ) -> AsyncIterator[str]:
        """Stream container log lines.

        While following, the stream re-attaches after the container restarts
        and resumes after the last line already delivered. Closing the
        generator (or cancelling its consumer) only closes the log stream.
        """
        loop = asyncio.get_event_loop()
        last_ts: Optional[str] = None

        while True:
            try:
                container = await loop.run_in_executor(
                    None, self.client.containers.get, container_id
                )
            except NotFound:
                logger.info(f"Container {container_id} gone, log tail finished")
                return

            stream = await loop.run_in_executor(
                None,
                functools.partial(
                    container.logs,
                    stream=True,
                    follow=follow,
                    timestamps=True,
                    tail=tail if last_ts is None else "all",
                    since=self._parse_timestamp(last_ts) if last_ts else None,
                ),
            )
            try:
                iterator = iter(stream)
                buffer = b""
                while True:
                    chunk = await loop.run_in_executor(None, next, iterator, None)
                    if chunk is None:
                        break
                    buffer += chunk
                    *lines, buffer = buffer.split(b"\n")
                    for raw in lines:
                        line = self._split_timestamp(raw.decode("utf-8", errors="replace"))
                        if line is None:
                            continue
                        ts, text = line
                        if last_ts is not None and ts <= last_ts:
                            continue
                        last_ts = ts
                        yield f"{ts} {text}" if timestamps else text
            finally:
                close = getattr(stream, "close", None)
                if close is not None:
                    close()

            if not follow:
                return
            await asyncio.sleep(reattach_interval)
            logger.debug(f"Log stream for {container_id} ended, re-attaching")

    # -------------------------------------------------------------------------
    # Synchronous implementations
    # -------------------------------------------------------------------------

    def _ensure_running_sync(
        self,
        spec: DeploymentSpec,
        snapshot: Optional[EnvironmentSnapshot],
    ) -> ContainerState:
        if spec.gpu_reservation is not None and snapshot is not None:
            if not snapshot.runtime_gpu_enabled:
                raise RuntimeGpuDisabledError(driver_version=snapshot.driver_version)

        existing = self._get_container(spec.container_name)
        if existing is not None:
            if self._matches(existing, spec):
                if existing.status == "running":
                    logger.info(f"Container {spec.container_name} already running")
                    return self._to_state(existing)
                self._check_port(spec, own_container=existing)
                logger.info(f"Starting existing container {spec.container_name}")
                try:
                    existing.start()
                except APIError as e:
                    raise self._launch_error(e, spec) from e
                existing.reload()
                return self._to_state(existing)

            logger.info(f"Removing container {spec.container_name} with outdated configuration")
            existing.remove(force=True)

        adopted = self._find_running_match(spec)
        if adopted is not None:
            logger.info(
                f"Container {adopted.name} already serves {spec.image_reference} "
                f"on port {spec.exposed_port}, reusing it"
            )
            return self._to_state(adopted)

        self._check_port(spec)
        self._ensure_image(spec.image_reference)
        return self._create(spec)

    def _create(self, spec: DeploymentSpec) -> ContainerState:
        """Create and start the container."""
        device_requests = None
        if spec.gpu_reservation is not None:
            device_requests = [
                docker.types.DeviceRequest(
                    driver=spec.gpu_reservation.driver,
                    count=spec.gpu_reservation.device_count,
                    capabilities=[sorted(spec.gpu_reservation.capabilities)],
                )
            ]

        volumes = None
        if spec.volume_mount is not None:
            volumes = {
                spec.volume_mount.source: {
                    "bind": spec.volume_mount.destination,
                    "mode": spec.volume_mount.mode,
                }
            }

        logger.info(
            f"Creating container {spec.container_name} from image {spec.image_reference} "
            f"(port={spec.exposed_port}, gpu={spec.gpu_reservation is not None})"
        )
        try:
            container = self.client.containers.run(
                image=spec.image_reference,
                name=spec.container_name,
                detach=True,
                remove=False,
                ports={f"{spec.container_port}/tcp": spec.exposed_port},
                volumes=volumes,
                device_requests=device_requests,
                environment=dict(spec.environment),
                labels={
                    self.MANAGED_LABEL: "true",
                    self.SPEC_LABEL: str(spec.exposed_port),
                },
                restart_policy=spec.restart_policy.to_docker(),
            )
        except (APIError, ImageNotFound) as e:
            raise self._launch_error(e, spec) from e

        logger.info(f"Container {spec.container_name} created with ID {container.short_id}")
        container.reload()
        return self._to_state(container)

    def _stop_sync(self, container_id: str, timeout: int, remove: bool) -> ContainerState:
        container = self._get_container(container_id)
        if container is None:
            logger.warning(f"Container {container_id} not found")
            return ContainerState(id=container_id, status=ContainerStatus.ABSENT)

        logger.info(f"Stopping container: {container_id}")
        container.stop(timeout=timeout)
        if remove:
            container.remove()
            logger.info(f"Container {container_id} stopped and removed")
            return ContainerState(
                id=container.id, name=container.name, status=ContainerStatus.ABSENT
            )

        container.reload()
        return self._to_state(container)

    def _restart_sync(self, container_id: str, timeout: int) -> ContainerState:
        logger.info(f"Restarting container: {container_id}")
        container = self.client.containers.get(container_id)
        container.restart(timeout=timeout)
        container.reload()
        return self._to_state(container)

    def _status_sync(self, container_id: str) -> ContainerState:
        container = self._get_container(container_id)
        if container is None:
            return ContainerState(id=container_id, status=ContainerStatus.ABSENT)
        return self._to_state(container)

    def _list_managed_sync(self) -> list[ContainerState]:
        containers = self.client.containers.list(
            all=True, filters={"label": f"{self.MANAGED_LABEL}=true"}
        )
        return [self._to_state(c) for c in containers]

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _get_container(self, container_id: str):
        """Fetch a fresh container object, or None if it does not exist."""
        try:
            return self.client.containers.get(container_id)
        except NotFound:
            return None

    def _ensure_image(self, image: str) -> None:
        """Pull the image if it is not present locally."""
        try:
            self.client.images.get(image)
            return
        except ImageNotFound:
            pass

        logger.info(f"Pulling image {image}...")
        layers: dict[str, dict[str, int]] = {}
        last_logged = -1
        try:
            for line in self.client.api.pull(image, stream=True, decode=True):
                if "error" in line:
                    raise LaunchError(f"Failed to pull image {image}", stderr=line["error"])
                detail = line.get("progressDetail") or {}
                if "id" in line and detail.get("total"):
                    layers[line["id"]] = {
                        "current": detail.get("current", 0),
                        "total": detail["total"],
                    }
                    total_size = sum(layer["total"] for layer in layers.values())
                    downloaded = sum(layer["current"] for layer in layers.values())
                    progress = int(downloaded / total_size * 100) if total_size > 0 else 0
                    if progress // 10 > last_logged // 10:
                        logger.info(f"Pull {image}: {progress}%")
                        last_logged = progress
        except APIError as e:
            raise LaunchError(
                f"Failed to pull image {image}", stderr=e.explanation or str(e)
            ) from e
        logger.info(f"Image {image} pulled")

    def _matches(self, container, spec: DeploymentSpec) -> bool:
        """Check whether an existing container was created from ``spec``."""
        config_image = container.attrs.get("Config", {}).get("Image")
        tags = container.image.tags if container.image else []
        if spec.image_reference != config_image and spec.image_reference not in tags:
            return False
        return self._host_port(container, spec.container_port) == spec.exposed_port

    def _host_port(self, container, container_port: int) -> Optional[int]:
        """Published host port for ``container_port``, running or not."""
        key = f"{container_port}/tcp"
        sources = (
            container.attrs.get("NetworkSettings", {}).get("Ports") or {},
            container.attrs.get("HostConfig", {}).get("PortBindings") or {},
        )
        for bindings in sources:
            for binding in bindings.get(key) or []:
                host_port = binding.get("HostPort")
                if host_port:
                    return int(host_port)
        return None

    def _find_running_match(self, spec: DeploymentSpec):
        """Find a running container with the requested image and host port, whatever its name."""
        try:
            running = self.client.containers.list(all=False)
        except DockerException as e:
            logger.warning(f"Failed to list containers: {e}")
            return None
        for container in running:
            if self._matches(container, spec):
                return container
        return None

    def _is_port_in_use(self, port: int) -> bool:
        """Check if a port is in use by trying to bind to it."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind(("0.0.0.0", port))
                return False
            except OSError:
                return True

    def _get_docker_used_ports(self, exclude_id: Optional[str] = None) -> set[int]:
        """Get all host ports published by running containers."""
        used_ports: set[int] = set()
        try:
            for container in self.client.containers.list(all=False):
                if exclude_id and container.id == exclude_id:
                    continue
                ports = container.attrs.get("NetworkSettings", {}).get("Ports") or {}
                for bindings in ports.values():
                    for binding in bindings or []:
                        host_port = binding.get("HostPort")
                        if host_port:
                            used_ports.add(int(host_port))
        except DockerException as e:
            logger.warning(f"Failed to get Docker ports: {e}")
        return used_ports

    def _check_port(self, spec: DeploymentSpec, own_container=None) -> None:
        """Raise PortConflictError if the exposed port is taken by someone else."""
        port = spec.exposed_port
        exclude_id = own_container.id if own_container is not None else None
        if port in self._get_docker_used_ports(exclude_id=exclude_id):
            raise PortConflictError(port, stderr="published by another container")
        if self._is_port_in_use(port):
            raise PortConflictError(port)

    def _launch_error(self, error: Exception, spec: DeploymentSpec) -> LaunchError:
        """Translate a runtime error into LaunchError/PortConflictError."""
        stderr = getattr(error, "explanation", None) or str(error)
        if any(marker in stderr.lower() for marker in PORT_CONFLICT_MARKERS):
            return PortConflictError(spec.exposed_port, stderr=stderr)
        logger.error(f"Runtime rejected container {spec.container_name}: {stderr}")
        return LaunchError(
            f"Failed to launch container {spec.container_name}",
            stderr=stderr,
            container_name=spec.container_name,
        )

    def _to_state(self, container) -> ContainerState:
        """Map a Docker container to ContainerState."""
        attrs: dict[str, Any] = container.attrs or {}
        state = attrs.get("State", {})
        exit_code = state.get("ExitCode")
        docker_status = container.status

        if docker_status in ("created", "restarting"):
            status = ContainerStatus.STARTING
        elif docker_status == "running":
            health = (state.get("Health") or {}).get("Status")
            status = ContainerStatus.STARTING if health == "starting" else ContainerStatus.RUNNING
        elif docker_status in ("exited", "paused"):
            status = ContainerStatus.FAILED if exit_code else ContainerStatus.STOPPED
        elif docker_status == "dead":
            status = ContainerStatus.FAILED
        else:
            status = ContainerStatus.STOPPED

        port_keys = list(attrs.get("NetworkSettings", {}).get("Ports") or {}) or list(
            attrs.get("HostConfig", {}).get("PortBindings") or {}
        )
        container_port = int(port_keys[0].split("/")[0]) if port_keys else None

        return ContainerState(
            id=container.id,
            name=container.name,
            status=status,
            image=attrs.get("Config", {}).get("Image"),
            host_port=self._host_port(container, container_port) if container_port else None,
            exit_code=exit_code,
            last_observed_at=utcnow(),
        )

    @staticmethod
    def _split_timestamp(line: str) -> Optional[tuple[str, str]]:
        """Split a timestamped Docker log line into (timestamp, text)."""
        line = line.rstrip("\r")
        if not line:
            return None
        ts, _, text = line.partition(" ")
        return ts, text

    @staticmethod
    def _parse_timestamp(ts: str) -> Optional[float]:
        """Convert a Docker RFC3339Nano timestamp to a unix timestamp."""
        base, _, frac = ts.rstrip("Z").partition(".")
        try:
            parsed = datetime.fromisoformat(base).replace(tzinfo=UTC)
        except ValueError:
            return None
        return parsed.timestamp() + (float(f"0.{frac[:6]}") if frac.isdigit() else 0.0)
