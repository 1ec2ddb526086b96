"""lmserve: local model-server lifecycle orchestrator.

Automates deploying a GPU-accelerated Ollama server in Docker: GPU driver and
runtime checks, container lifecycle, readiness polling and model pulls.

Module Structure:
- orchestrator.py: Run state machine composing the components below
- docker_ops/: GPU probing and container lifecycle (Docker SDK)
- registry.py: Model pull/list/delete client for the server's HTTP API
- health.py: Readiness polling with backoff
- locking.py: Exclusive per-target run lock
- models.py: Pydantic records shared across components
- config.py: LMSERVE_* settings
- cli.py: Command line entry point
"""

__version__ = "0.1.0"
