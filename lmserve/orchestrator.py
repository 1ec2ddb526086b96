"""Top-level orchestration of a model-server deployment.

Drives one run through Idle -> Probing -> Launching -> AwaitingHealth ->
SyncingModels -> Ready, with Failed reachable from every state. A run is
single-use: after Ready or Failed a new Orchestrator must be created.
"""

import asyncio
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Optional

import docker
import httpx
from docker.errors import DockerException

from .config import Settings
from .docker_ops import ContainerLifecycleManager, EnvironmentProber
from .exceptions import InvalidTransitionError, LaunchError, LMServeError
from .health import HealthVerifier
from .locking import DeploymentLock
from .models import (
    ContainerState,
    DeploymentSpec,
    EnvironmentSnapshot,
    HealthStatus,
    ModelRecord,
    OrchestratorState,
    PullStatus,
    RunError,
    RunReport,
    StateTransition,
)
from .registry import ModelRegistryClient, normalize_model_name

logger = logging.getLogger(__name__)

# Allowed transitions besides X -> FAILED, which is always allowed before a terminal state
TRANSITIONS = {
    OrchestratorState.IDLE: {OrchestratorState.PROBING},
    OrchestratorState.PROBING: {OrchestratorState.LAUNCHING},
    OrchestratorState.LAUNCHING: {OrchestratorState.AWAITING_HEALTH},
    OrchestratorState.AWAITING_HEALTH: {OrchestratorState.SYNCING_MODELS},
    OrchestratorState.SYNCING_MODELS: {OrchestratorState.READY},
    OrchestratorState.READY: set(),
    OrchestratorState.FAILED: set(),
}


class Orchestrator:
    """Compose prober, container manager, health verifier and registry client."""

    def __init__(
        self,
        spec: DeploymentSpec,
        prober: EnvironmentProber,
        containers: ContainerLifecycleManager,
        health: HealthVerifier,
        registry: ModelRegistryClient,
        gpu_mandatory: bool = True,
        models_to_ensure: Iterable[str] = (),
        health_timeout: float = 120.0,
        health_poll_interval: float = 2.0,
        max_parallel_pulls: int = 2,
        pull_timeout: float = 1800.0,
        lock_dir: Path = Path("/tmp/lmserve"),
    ):
        if max_parallel_pulls < 1:
            raise ValueError("max_parallel_pulls must be at least 1")
        self.spec = spec
        self.prober = prober
        self.containers = containers
        self.health = health
        self.registry = registry
        self.gpu_mandatory = gpu_mandatory
        self.models_to_ensure = list(dict.fromkeys(models_to_ensure))
        self.health_timeout = health_timeout
        self.health_poll_interval = health_poll_interval
        self.max_parallel_pulls = max_parallel_pulls
        self.pull_timeout = pull_timeout
        self.lock = DeploymentLock(spec.lock_key, lock_dir)

        self._state = OrchestratorState.IDLE
        self.history: list[StateTransition] = []
        self.snapshot: Optional[EnvironmentSnapshot] = None
        self.container: Optional[ContainerState] = None
        self.health_status: Optional[HealthStatus] = None
        self.models: list[ModelRecord] = []

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        client: Optional[docker.DockerClient] = None,
    ) -> "Orchestrator":
        """Build an orchestrator wired to the local Docker daemon."""
        if client is None:
            try:
                client = docker.from_env()
            except DockerException as e:
                raise LaunchError("Docker daemon is not reachable", stderr=str(e)) from e

        return cls(
            spec=settings.to_deployment_spec(),
            prober=EnvironmentProber(client, gpu_mandatory=settings.gpu_mandatory),
            containers=ContainerLifecycleManager(client),
            health=HealthVerifier(
                settings.base_url,
                path=settings.health_path,
                backoff_factor=settings.health_backoff_factor,
                max_interval=settings.health_max_interval_seconds,
            ),
            registry=ModelRegistryClient(settings.base_url),
            gpu_mandatory=settings.gpu_mandatory,
            models_to_ensure=settings.get_models_to_ensure(),
            health_timeout=settings.health_timeout_seconds,
            health_poll_interval=settings.health_poll_interval_seconds,
            max_parallel_pulls=settings.max_parallel_pulls,
            pull_timeout=settings.pull_timeout_seconds,
            lock_dir=settings.lock_dir,
        )

    @property
    def state(self) -> OrchestratorState:
        return self._state

    def _transition(self, target: OrchestratorState, reason: str = "") -> None:
        allowed = TRANSITIONS[self._state]
        if target == OrchestratorState.FAILED and self._state not in (
            OrchestratorState.READY,
            OrchestratorState.FAILED,
        ):
            allowed = allowed | {OrchestratorState.FAILED}
        if target not in allowed:
            raise InvalidTransitionError("orchestrator", self._state.value, target.value)

        self.history.append(StateTransition(source=self._state, target=target, reason=reason))
        logger.info(f"{self._state.value} -> {target.value}" + (f" ({reason})" if reason else ""))
        self._state = target

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def run(self) -> RunReport:
        """Execute one orchestration run and report how it ended."""
        if self._state != OrchestratorState.IDLE:
            raise InvalidTransitionError("orchestrator", self._state.value, "run")

        try:
            self.lock.acquire()
        except LMServeError as e:
            return self._fail(e)

        try:
            return await self._run_locked()
        except Exception as e:
            if self._state in (OrchestratorState.READY, OrchestratorState.FAILED):
                raise
            logger.exception(f"Unexpected error in {self._state.value}")
            return self._fail(LMServeError(f"{type(e).__name__}: {e}"))
        finally:
            await self.registry.aclose()
            self.lock.release()

    async def _run_locked(self) -> RunReport:
        loop = asyncio.get_event_loop()

        self._transition(OrchestratorState.PROBING)
        try:
            self.snapshot = await loop.run_in_executor(None, self.prober.probe, self.gpu_mandatory)
        except LMServeError as e:
            return self._fail(e)

        spec = self.spec
        if spec.gpu_reservation is not None and not self.snapshot.gpu_usable:
            logger.warning("GPU not usable on this host, launching without GPU reservation")
            spec = spec.without_gpu()

        self._transition(OrchestratorState.LAUNCHING)
        try:
            self.container = await self.containers.ensure_running(spec, self.snapshot)
        except LMServeError as e:
            return self._fail(e)
        except DockerException as e:
            return self._fail(
                LaunchError(
                    f"Docker error while launching {spec.container_name}", stderr=str(e)
                )
            )

        self._transition(
            OrchestratorState.AWAITING_HEALTH,
            reason=f"container {self.container.status.value}",
        )
        try:
            self.health_status = await self.health.wait_until_healthy(
                timeout=self.health_timeout,
                poll_interval=self.health_poll_interval,
            )
        except LMServeError as e:
            return self._fail(e)

        self._transition(
            OrchestratorState.SYNCING_MODELS,
            reason=f"server version {self.health_status.reported_version}",
        )
        self.models = await self._sync_models()

        failed = [m for m in self.models if m.pull_status == PullStatus.FAILED]
        for record in failed:
            logger.warning(f"Model {record.name} unavailable: {record.diagnostic}")
        reason = f"{len(self.models) - len(failed)}/{len(self.models)} models ready"
        self._transition(OrchestratorState.READY, reason=reason)
        return self.report()

    async def _sync_models(self) -> list[ModelRecord]:
        """Pull every requested model that is not already resident."""
        if not self.models_to_ensure:
            return []

        try:
            resident = {
                normalize_model_name(m.name): m for m in await self.registry.list_models()
            }
        except (httpx.HTTPError, ValueError) as e:
            # ValueError covers a non-JSON body, e.g. from a proxy
            logger.warning(f"Could not list resident models, pulling all: {e}")
            resident = {}

        semaphore = asyncio.Semaphore(self.max_parallel_pulls)

        async def ensure(name: str) -> ModelRecord:
            existing = resident.get(normalize_model_name(name))
            if existing is not None:
                logger.info(f"Model {name} already resident")
                return existing.model_copy(update={"name": name})
            async with semaphore:
                return await self.registry.pull(name, self.pull_timeout)

        return list(await asyncio.gather(*(ensure(name) for name in self.models_to_ensure)))

    def _fail(self, error: LMServeError) -> RunReport:
        failed_state = self._state
        logger.error(f"Run failed in {failed_state.value}: {error.message}")
        if error.remediation:
            logger.error(f"Hint: {error.remediation}")
        self._transition(OrchestratorState.FAILED, reason=error.error_type)
        return self.report(
            failed_state=failed_state,
            error=RunError(
                error_type=error.error_type,
                message=error.message,
                remediation=error.remediation,
                exit_code=error.exit_code,
            ),
        )

    def report(
        self,
        failed_state: Optional[OrchestratorState] = None,
        error: Optional[RunError] = None,
    ) -> RunReport:
        return RunReport(
            state=self._state,
            failed_state=failed_state,
            error=error,
            environment=self.snapshot,
            container=self.container,
            health=self.health_status,
            models=self.models,
            history=list(self.history),
        )

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def teardown(self, remove: bool = False) -> ContainerState:
        """Stop the deployment's container under the run lock."""
        with self.lock:
            return await self.containers.stop(self.spec.container_name, remove=remove)
