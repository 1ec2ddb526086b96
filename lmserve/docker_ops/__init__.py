"""Docker management modules for lmserve.

This package provides Docker operations including:
- GPU driver and runtime probing (gpu.py)
- Inference server container lifecycle (containers.py)
"""

from .containers import ContainerLifecycleManager
from .gpu import EnvironmentProber

__all__ = [
    "EnvironmentProber",
    "ContainerLifecycleManager",
]
