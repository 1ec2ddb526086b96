"""GPU environment probing for lmserve.

Checks the NVIDIA driver (using pynvml, falling back to nvidia-smi) and the
container runtime's GPU integration before any deployment action.
"""

import logging
import subprocess
from typing import Optional

import docker
from docker.errors import DockerException

from ..exceptions import DriverNotFoundError, RuntimeGpuDisabledError
from ..models import EnvironmentSnapshot, GPUInfo

logger = logging.getLogger(__name__)


class EnvironmentProber:
    """Inspect host and runtime GPU readiness.

    Probing is read-only: it queries NVML, ``nvidia-smi`` and the Docker
    daemon's ``info`` endpoint and never changes host state.
    """

    GPU_RUNTIME_NAMES = ("nvidia",)

    def __init__(self, client: Optional[docker.DockerClient] = None, gpu_mandatory: bool = True):
        self.client = client
        self.gpu_mandatory = gpu_mandatory

    def probe(self, gpu_mandatory: Optional[bool] = None) -> EnvironmentSnapshot:
        """Capture an environment snapshot.

        Args:
            gpu_mandatory: Override the prober's default. When true, a missing
                driver or missing runtime integration raises instead of
                returning a CPU-only snapshot.

        Raises:
            DriverNotFoundError: GPU mandatory and no driver signal found.
            RuntimeGpuDisabledError: GPU mandatory, driver present, but the
                runtime cannot reserve GPUs.
        """
        mandatory = self.gpu_mandatory if gpu_mandatory is None else gpu_mandatory

        driver_present, driver_version, gpus = self._detect_driver()
        runtime_enabled, tags = self._detect_runtime()

        snapshot = EnvironmentSnapshot(
            driver_present=driver_present,
            driver_version=driver_version,
            runtime_gpu_enabled=runtime_enabled,
            capability_tags=frozenset(tags),
            gpus=tuple(gpus),
        )
        logger.info(
            f"Environment: driver_present={driver_present} driver_version={driver_version} "
            f"gpus={len(gpus)} runtime_gpu_enabled={runtime_enabled} tags={sorted(tags)}"
        )

        if mandatory and not driver_present:
            raise DriverNotFoundError()
        if mandatory and not runtime_enabled:
            raise RuntimeGpuDisabledError(driver_version=driver_version)
        return snapshot

    # -------------------------------------------------------------------------
    # Driver detection
    # -------------------------------------------------------------------------

    def _detect_driver(self) -> tuple[bool, Optional[str], list[GPUInfo]]:
        """Return (driver_present, driver_version, gpus)."""
        # Try pynvml first (works on desktop/server NVIDIA GPUs)
        result = self._detect_nvidia_pynvml()
        if result is not None:
            return result

        # Fallback to nvidia-smi (Tegra/Jetson, or nvidia-ml-py not installed)
        result = self._detect_nvidia_smi()
        if result is not None:
            return result

        return False, None, []

    def _detect_nvidia_pynvml(self) -> Optional[tuple[bool, Optional[str], list[GPUInfo]]]:
        """Detect driver and GPUs using pynvml."""
        try:
            import pynvml
        except ImportError:
            logger.debug("pynvml (nvidia-ml-py) not installed")
            return None

        try:
            pynvml.nvmlInit()
        except pynvml.NVMLError as e:
            logger.debug(f"NVML init failed: {e}")
            return None

        try:
            version = pynvml.nvmlSystemGetDriverVersion()
            if isinstance(version, bytes):
                version = version.decode("utf-8")

            gpus = []
            for i in range(pynvml.nvmlDeviceGetCount()):
                handle = pynvml.nvmlDeviceGetHandleByIndex(i)
                name = pynvml.nvmlDeviceGetName(handle)
                if isinstance(name, bytes):
                    name = name.decode("utf-8")
                mem_info = pynvml.nvmlDeviceGetMemoryInfo(handle)
                gpus.append(
                    GPUInfo(
                        index=i,
                        name=name,
                        memory_total=mem_info.total,
                        memory_used=mem_info.used,
                        memory_free=mem_info.free,
                    )
                )
            return True, version, gpus
        except pynvml.NVMLError as e:
            logger.debug(f"pynvml GPU detection failed: {e}")
            return None
        finally:
            try:
                pynvml.nvmlShutdown()
            except pynvml.NVMLError:
                pass

    def _parse_nvidia_smi_value(self, value: str) -> float | None:
        """Parse a value from nvidia-smi output, returning None for [N/A] or invalid."""
        value = value.strip()
        if not value or value.startswith("[N/A]") or value == "N/A" or value == "Not Supported":
            return None
        try:
            return float(value)
        except (ValueError, TypeError):
            return None

    def _detect_nvidia_smi(self) -> Optional[tuple[bool, Optional[str], list[GPUInfo]]]:
        """Detect driver and GPUs using the nvidia-smi command."""
        try:
            result = subprocess.run(
                [
                    "nvidia-smi",
                    "--query-gpu=index,name,driver_version,memory.total,memory.used,memory.free",
                    "--format=csv,noheader,nounits",
                ],
                capture_output=True,
                text=True,
                timeout=10,
            )
        except FileNotFoundError:
            logger.debug("nvidia-smi not found")
            return None
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"nvidia-smi failed to run: {e}")
            return None

        if result.returncode != 0:
            logger.debug(f"nvidia-smi failed: {result.stderr}")
            return None

        version = None
        gpus = []
        for line in result.stdout.strip().split("\n"):
            parts = [p.strip() for p in line.split(",")]
            if len(parts) < 6:
                continue
            try:
                idx = int(parts[0])
            except ValueError:
                continue

            version = version or parts[2] or None
            mem_total = self._parse_nvidia_smi_value(parts[3])
            mem_used = self._parse_nvidia_smi_value(parts[4])
            mem_free = self._parse_nvidia_smi_value(parts[5])
            # nvidia-smi reports MiB; unified-memory platforms report [N/A]
            gpus.append(
                GPUInfo(
                    index=idx,
                    name=parts[1],
                    memory_total=int(mem_total or 0) * 1024 * 1024,
                    memory_used=int(mem_used or 0) * 1024 * 1024,
                    memory_free=int(mem_free or 0) * 1024 * 1024,
                )
            )

        if not gpus:
            return None
        logger.debug(f"Detected {len(gpus)} GPU(s) via nvidia-smi")
        return True, version, gpus

    # -------------------------------------------------------------------------
    # Runtime detection
    # -------------------------------------------------------------------------

    def _detect_runtime(self) -> tuple[bool, set[str]]:
        """Check whether the container runtime can honour GPU reservations."""
        tags: set[str] = set()
        if self.client is None:
            try:
                self.client = docker.from_env()
            except DockerException as e:
                logger.warning(f"Docker daemon not reachable: {e}")
                return False, tags

        try:
            info = self.client.info()
        except DockerException as e:
            logger.warning(f"Failed to query Docker info: {e}")
            return False, tags

        runtimes = info.get("Runtimes") or {}
        for name in runtimes:
            if any(gpu_name in name for gpu_name in self.GPU_RUNTIME_NAMES):
                tags.add(f"runtime:{name}")

        default_runtime = info.get("DefaultRuntime", "")
        if any(gpu_name in default_runtime for gpu_name in self.GPU_RUNTIME_NAMES):
            tags.add(f"default-runtime:{default_runtime}")

        enabled = bool(tags)
        if enabled:
            tags.add("gpu")

        # CDI spec dirs are configured by default, so they only annotate the snapshot
        if info.get("CDISpecDirs"):
            tags.add("cdi")
        return enabled, tags
