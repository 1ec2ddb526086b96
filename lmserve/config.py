"""Application configuration"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError
from .models import DeploymentSpec, GPUReservation, RestartPolicy, VolumeMount


class Settings(BaseSettings):
    """Orchestrator settings, read from LMSERVE_* variables and .env"""

    model_config = SettingsConfigDict(env_prefix="LMSERVE_", env_file=".env", extra="ignore")

    # Container
    image_reference: str = "ollama/ollama:latest"
    container_name: str = "lmserve-ollama"
    exposed_port: int = 11434
    container_port: int = 11434  # Ollama listens here inside the image
    volume_mount: Optional[str] = "ollama:/root/.ollama"
    restart_policy: RestartPolicy = RestartPolicy.ALWAYS

    # GPU reservation
    gpu_mandatory: bool = True
    gpu_driver: str = "nvidia"
    gpu_count: str = "all"
    gpu_capabilities: str = "gpu"  # comma-separated

    # Models to pull once the server is healthy, comma-separated
    # Example: "qwen2:0.5b,llama3.2"
    models_to_ensure: str = ""
    max_parallel_pulls: int = 2
    pull_timeout_seconds: float = 1800.0

    # Health
    server_host: str = "localhost"
    health_path: str = "/api/version"
    health_timeout_seconds: float = 120.0
    health_poll_interval_seconds: float = 2.0
    health_backoff_factor: float = 1.0
    health_max_interval_seconds: float = 10.0

    # Run lock directory
    lock_dir: Path = Path("/tmp/lmserve")

    log_level: str = "INFO"

    @property
    def base_url(self) -> str:
        return f"http://{self.server_host}:{self.exposed_port}"

    def get_models_to_ensure(self) -> list[str]:
        """Parse model names from comma-separated string, keeping order."""
        names: list[str] = []
        for name in self.models_to_ensure.split(","):
            name = name.strip()
            if name and name not in names:
                names.append(name)
        return names

    def get_gpu_capabilities(self) -> frozenset[str]:
        return frozenset(c.strip() for c in self.gpu_capabilities.split(",") if c.strip())

    def to_deployment_spec(self) -> DeploymentSpec:
        """Build the immutable deployment spec for a run."""
        try:
            volume = VolumeMount.parse(self.volume_mount) if self.volume_mount else None
            reservation = GPUReservation(
                driver=self.gpu_driver,
                count=self.gpu_count,
                capabilities=self.get_gpu_capabilities() or frozenset({"gpu"}),
            )
            return DeploymentSpec(
                image_reference=self.image_reference,
                exposed_port=self.exposed_port,
                volume_mount=volume,
                gpu_reservation=reservation,
                restart_policy=self.restart_policy,
                container_name=self.container_name,
                container_port=self.container_port,
                environment={"OLLAMA_HOST": f"0.0.0.0:{self.container_port}"},
            )
        except (ValidationError, ValueError) as e:
            raise ConfigurationError(f"Invalid deployment configuration: {e}") from e


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
