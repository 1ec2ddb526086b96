"""Custom exceptions for lmserve.

Every failure an orchestration run can hit maps to one of these classes.
Each carries a stable ``error_type``, a CLI exit code and an operator-facing
remediation hint.
"""

from typing import Any, Optional


class LMServeError(Exception):
    """Base exception for all lmserve errors."""

    exit_code: int = 1
    remediation: str = ""

    def __init__(
        self,
        message: str,
        error_type: str = "internal_error",
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        self.error_type = error_type
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to report format."""
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "remediation": self.remediation,
                **self.details,
            }
        }


class ConfigurationError(LMServeError):
    """Configuration could not be turned into a deployment spec."""

    exit_code = 2
    remediation = "Check LMSERVE_* environment variables and the .env file."

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(message=message, error_type="configuration_error", details=details)


class InvalidTransitionError(LMServeError):
    """A record was asked to move to a state its lifecycle does not allow."""

    def __init__(self, subject: str, current: str, target: str):
        super().__init__(
            message=f"{subject}: cannot transition from {current} to {target}",
            error_type="invalid_transition",
            details={"current": current, "target": target},
        )


class DriverNotFoundError(LMServeError):
    """No GPU driver signal was found on the host."""

    exit_code = 10
    remediation = (
        "Install the NVIDIA driver and verify it with `nvidia-smi`, "
        "or set LMSERVE_GPU_MANDATORY=false to allow CPU fallback."
    )

    def __init__(self, message: str = "No NVIDIA GPU driver detected on this host"):
        super().__init__(message=message, error_type="driver_not_found")


class RuntimeGpuDisabledError(LMServeError):
    """The driver is present but the container runtime cannot reserve GPUs."""

    exit_code = 11
    remediation = (
        "Install the NVIDIA Container Toolkit, run "
        "`nvidia-ctk runtime configure --runtime=docker` and restart Docker."
    )

    def __init__(
        self,
        message: str = "Container runtime has no GPU integration configured",
        driver_version: Optional[str] = None,
    ):
        details = {"driver_version": driver_version} if driver_version else {}
        super().__init__(message=message, error_type="runtime_gpu_disabled", details=details)


class LaunchError(LMServeError):
    """The container runtime refused to create or start the container."""

    exit_code = 20
    remediation = "Inspect the runtime error above and `lmserve logs` for the container output."

    def __init__(
        self,
        message: str,
        stderr: Optional[str] = None,
        container_name: Optional[str] = None,
        error_type: str = "launch_error",
    ):
        self.stderr = stderr
        details: dict[str, Any] = {}
        if stderr:
            details["stderr"] = stderr
        if container_name:
            details["container_name"] = container_name
        super().__init__(message=message, error_type=error_type, details=details)


class PortConflictError(LaunchError):
    """The exposed host port is already bound by something else."""

    exit_code = 21
    remediation = (
        "Free the port (`ss -ltnp | grep <port>`), stop the other server, "
        "or change LMSERVE_EXPOSED_PORT."
    )

    def __init__(self, port: int, stderr: Optional[str] = None):
        self.port = port
        super().__init__(
            message=f"Port {port} is already in use by another process",
            stderr=stderr,
            error_type="port_conflict",
        )
        self.details["port"] = port


class HealthCheckTimeoutError(LMServeError):
    """The readiness endpoint never answered within the time budget."""

    exit_code = 30
    remediation = (
        "The server did not become ready. Check `lmserve logs`; large images or "
        "slow disks may need a higher LMSERVE_HEALTH_TIMEOUT_SECONDS."
    )

    def __init__(
        self,
        url: str,
        timeout: float,
        attempt_count: int = 0,
        last_error: Optional[str] = None,
    ):
        self.attempt_count = attempt_count
        self.last_error = last_error
        details: dict[str, Any] = {"url": url, "timeout": timeout, "attempts": attempt_count}
        if last_error:
            details["last_error"] = last_error
        super().__init__(
            message=f"{url} not healthy after {timeout}s ({attempt_count} attempts)",
            error_type="health_timeout",
            details=details,
        )


class UnknownModelError(LMServeError):
    """Progress was requested for a model that was never pulled."""

    exit_code = 40
    remediation = "Request a pull for the model before polling its progress."

    def __init__(self, name: str):
        super().__init__(
            message=f"Model '{name}' has no pull request",
            error_type="unknown_model",
            details={"model": name},
        )


class PullFailedError(LMServeError):
    """A model pull ended in the failed state."""

    exit_code = 41
    remediation = (
        "Check the model tag on the registry, network connectivity and free disk "
        "space, then pull again."
    )

    def __init__(self, name: str, diagnostic: Optional[str] = None):
        message = f"Pull of model '{name}' failed"
        if diagnostic:
            message = f"{message}: {diagnostic}"
        super().__init__(
            message=message,
            error_type="pull_failed",
            details={"model": name},
        )


class DeploymentLockedError(LMServeError):
    """Another orchestration run holds the lock for the same target."""

    exit_code = 50
    remediation = "Wait for the other run to finish; only one run may target a container."

    def __init__(self, key: str, lock_path: Optional[str] = None):
        details = {"lock_key": key}
        if lock_path:
            details["lock_path"] = lock_path
        super().__init__(
            message=f"Another orchestration run is active for '{key}'",
            error_type="deployment_locked",
            details=details,
        )
