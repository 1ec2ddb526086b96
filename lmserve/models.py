"""Pydantic models for lmserve.

Contains the records exchanged between the prober, the container lifecycle
manager, the model registry client, the health verifier and the orchestrator.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Environment Models
# =============================================================================


class GPUInfo(BaseModel):
    """A single GPU as reported by NVML or nvidia-smi."""

    model_config = ConfigDict(frozen=True)

    index: int
    name: str
    memory_total: int = 0
    memory_used: int = 0
    memory_free: int = 0


class EnvironmentSnapshot(BaseModel):
    """Host and runtime GPU state captured once per orchestration run."""

    model_config = ConfigDict(frozen=True)

    driver_present: bool
    driver_version: Optional[str] = None
    runtime_gpu_enabled: bool = False
    capability_tags: frozenset[str] = frozenset()
    gpus: tuple[GPUInfo, ...] = ()
    captured_at: datetime = Field(default_factory=utcnow)

    @property
    def gpu_usable(self) -> bool:
        """True when a GPU reservation can actually be honoured."""
        return self.driver_present and self.runtime_gpu_enabled


# =============================================================================
# Deployment Models
# =============================================================================


class RestartPolicy(str, Enum):
    """Container restart policy."""

    ALWAYS = "always"
    ON_FAILURE = "on-failure"
    NEVER = "never"

    def to_docker(self) -> dict:
        if self == RestartPolicy.NEVER:
            return {"Name": "no"}
        if self == RestartPolicy.ON_FAILURE:
            return {"Name": "on-failure", "MaximumRetryCount": 3}
        return {"Name": "always"}


class GPUReservation(BaseModel):
    """Request to expose host accelerators to the container."""

    model_config = ConfigDict(frozen=True)

    driver: str = "nvidia"
    count: Union[int, Literal["all"]] = "all"
    capabilities: frozenset[str] = frozenset({"gpu"})

    @field_validator("count", mode="before")
    @classmethod
    def _parse_count(cls, value):
        if isinstance(value, str) and value.strip().lower() != "all":
            return int(value)
        if isinstance(value, str):
            return "all"
        if value < 1:
            raise ValueError("GPU count must be positive or 'all'")
        return value

    @property
    def device_count(self) -> int:
        """Device count in the runtime's convention (-1 means all)."""
        return -1 if self.count == "all" else self.count


class VolumeMount(BaseModel):
    """Host path or named volume mounted into the container."""

    model_config = ConfigDict(frozen=True)

    source: str
    destination: str
    mode: Literal["rw", "ro"] = "rw"

    @classmethod
    def parse(cls, value: str) -> "VolumeMount":
        """Parse the compose-style ``source:destination[:mode]`` form."""
        parts = value.split(":")
        if len(parts) == 2:
            return cls(source=parts[0], destination=parts[1])
        if len(parts) == 3:
            return cls(source=parts[0], destination=parts[1], mode=parts[2])
        raise ValueError(f"Invalid volume mount '{value}', expected source:destination[:mode]")


class DeploymentSpec(BaseModel):
    """Everything needed to launch the inference server container."""

    model_config = ConfigDict(frozen=True)

    image_reference: str
    exposed_port: int = Field(default=11434, gt=0, lt=65536)
    volume_mount: Optional[VolumeMount] = None
    gpu_reservation: Optional[GPUReservation] = Field(default_factory=GPUReservation)
    restart_policy: RestartPolicy = RestartPolicy.ALWAYS
    container_name: str = "lmserve-ollama"
    container_port: int = 11434
    environment: dict[str, str] = Field(default_factory=dict)

    @property
    def lock_key(self) -> str:
        return f"{self.container_name}-{self.exposed_port}"

    def without_gpu(self) -> "DeploymentSpec":
        """Copy of this spec with the GPU reservation dropped (CPU fallback)."""
        return self.model_copy(update={"gpu_reservation": None})


# =============================================================================
# Container Models
# =============================================================================


class ContainerStatus(str, Enum):
    """Observed container status."""

    ABSENT = "absent"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


class ContainerState(BaseModel):
    """Container state as last reported by the runtime."""

    id: str = ""
    name: str = ""
    status: ContainerStatus = ContainerStatus.ABSENT
    image: Optional[str] = None
    host_port: Optional[int] = None
    exit_code: Optional[int] = None
    last_observed_at: datetime = Field(default_factory=utcnow)


# =============================================================================
# Model Registry Models
# =============================================================================


class PullStatus(str, Enum):
    """Pull lifecycle of a requested model."""

    NOT_STARTED = "not_started"
    PULLING = "pulling"
    READY = "ready"
    FAILED = "failed"


TERMINAL_PULL_STATUSES = frozenset({PullStatus.READY, PullStatus.FAILED})


class ModelRecord(BaseModel):
    """Tracks download progress and readiness of one model.

    Transitions: not_started -> pulling -> {ready, failed}. Both ``ready`` and
    ``failed`` are terminal; progress only moves forward.
    """

    name: str
    pull_status: PullStatus = PullStatus.NOT_STARTED
    size_bytes: Optional[int] = None
    completed_bytes: int = 0
    progress: float = 0.0
    status_message: str = ""
    digest: Optional[str] = None
    diagnostic: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)
    # (completed, total) bytes per layer, keyed by digest
    layers: dict[str, tuple[int, int]] = Field(default_factory=dict, exclude=True)

    @property
    def is_terminal(self) -> bool:
        return self.pull_status in TERMINAL_PULL_STATUSES

    def _require(self, expected: PullStatus, target: PullStatus) -> None:
        if self.pull_status != expected:
            raise InvalidTransitionError(
                f"model '{self.name}'", self.pull_status.value, target.value
            )

    def mark_pulling(self) -> None:
        self._require(PullStatus.NOT_STARTED, PullStatus.PULLING)
        self.pull_status = PullStatus.PULLING
        self.status_message = "pulling manifest"
        self.updated_at = utcnow()

    def update_progress(
        self,
        status_message: str,
        completed: Optional[int] = None,
        total: Optional[int] = None,
        digest: Optional[str] = None,
    ) -> None:
        """Apply one progress line; totals and fractions never go backwards.

        Ollama reports ``completed``/``total`` per layer, so byte counts are
        tracked per digest and summed across layers.
        """
        self._require(PullStatus.PULLING, PullStatus.PULLING)
        if status_message:
            self.status_message = status_message
        if digest:
            self.digest = digest
        if total:
            key = digest or status_message
            done, _ = self.layers.get(key, (0, 0))
            done = min(max(done, completed or 0), total)
            self.layers = {**self.layers, key: (done, total)}

            layer_total = sum(t for _, t in self.layers.values())
            layer_done = sum(c for c, _ in self.layers.values())
            self.size_bytes = max(self.size_bytes or 0, layer_total)
            self.completed_bytes = max(self.completed_bytes, layer_done)
            self.progress = max(self.progress, layer_done / layer_total)
        self.updated_at = utcnow()

    def mark_ready(self) -> None:
        self._require(PullStatus.PULLING, PullStatus.READY)
        self.pull_status = PullStatus.READY
        self.progress = 1.0
        self.status_message = "success"
        self.updated_at = utcnow()

    def mark_failed(self, diagnostic: str) -> None:
        self._require(PullStatus.PULLING, PullStatus.FAILED)
        self.pull_status = PullStatus.FAILED
        self.diagnostic = diagnostic
        self.status_message = "failed"
        self.updated_at = utcnow()


# =============================================================================
# Health Models
# =============================================================================


class HealthState(str, Enum):
    """Health verifier state machine."""

    UNCHECKED = "unchecked"
    CHECKING = "checking"
    HEALTHY = "healthy"
    UNREACHABLE = "unreachable"


class HealthStatus(BaseModel):
    """Result of the latest readiness probe."""

    reachable: bool = False
    reported_version: Optional[str] = None
    checked_at: datetime = Field(default_factory=utcnow)
    attempt_count: int = 0
    last_error: Optional[str] = None


# =============================================================================
# Orchestration Models
# =============================================================================


class OrchestratorState(str, Enum):
    """Top-level orchestration run state."""

    IDLE = "idle"
    PROBING = "probing"
    LAUNCHING = "launching"
    AWAITING_HEALTH = "awaiting_health"
    SYNCING_MODELS = "syncing_models"
    READY = "ready"
    FAILED = "failed"


class StateTransition(BaseModel):
    """One step of a run's history."""

    source: OrchestratorState
    target: OrchestratorState
    at: datetime = Field(default_factory=utcnow)
    reason: str = ""


class RunError(BaseModel):
    """Error summary attached to a failed run."""

    error_type: str
    message: str
    remediation: str = ""
    exit_code: int = 1


class RunReport(BaseModel):
    """Outcome of one orchestration run."""

    state: OrchestratorState
    failed_state: Optional[OrchestratorState] = None
    error: Optional[RunError] = None
    environment: Optional[EnvironmentSnapshot] = None
    container: Optional[ContainerState] = None
    health: Optional[HealthStatus] = None
    models: list[ModelRecord] = Field(default_factory=list)
    history: list[StateTransition] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == OrchestratorState.READY

    @property
    def failed_models(self) -> list[ModelRecord]:
        return [m for m in self.models if m.pull_status == PullStatus.FAILED]

    @property
    def exit_code(self) -> int:
        if self.succeeded:
            return 0
        return self.error.exit_code if self.error else 1
