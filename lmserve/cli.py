"""lmserve command line interface.

Commands:
    up              probe, launch, wait for health and pull configured models
    down            stop the server container
    restart         restart the server container
    status          container state, server health and resident models
    logs            follow the server's logs
    pull <model>    pull one model and wait for it
    probe           report GPU driver and runtime integration
    models          list models resident on the server

Exit code 0 means success; failures exit with the error kind's code
(10 driver missing, 11 runtime GPU disabled, 20 launch failure, 21 port
conflict, 30 health timeout, 41 pull failure, 50 run locked).
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

import docker
from docker.errors import DockerException

from .config import Settings, get_settings
from .docker_ops import ContainerLifecycleManager, EnvironmentProber
from .exceptions import LaunchError, LMServeError
from .health import HealthVerifier
from .models import ModelRecord, PullStatus, RunReport
from .orchestrator import Orchestrator
from .registry import ModelRegistryClient

logger = logging.getLogger("lmserve")


def _docker_client() -> docker.DockerClient:
    try:
        return docker.from_env()
    except DockerException as e:
        raise LaunchError("Docker daemon is not reachable", stderr=str(e)) from e


def _format_size(size: Optional[int]) -> str:
    if not size:
        return "-"
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024:
            return f"{value:.1f}{unit}"
        value /= 1024
    return f"{value:.1f}TB"


def _print_report(report: RunReport) -> None:
    if report.succeeded:
        version = report.health.reported_version if report.health else "?"
        print(f"Ready: server version {version}")
    else:
        failed_in = report.failed_state.value if report.failed_state else "?"
        print(f"Failed in state '{failed_in}': {report.error.message if report.error else ''}")
        if report.error and report.error.remediation:
            print(f"Hint: {report.error.remediation}")

    for record in report.models:
        size = _format_size(record.size_bytes)
        line = f"  {record.name:<30} {record.pull_status.value:<8} {size}"
        if record.diagnostic:
            line += f"  ({record.diagnostic})"
        print(line)


# =============================================================================
# Commands
# =============================================================================


async def cmd_up(settings: Settings, args: argparse.Namespace) -> int:
    orchestrator = Orchestrator.from_settings(settings, client=_docker_client())
    report = await orchestrator.run()
    if args.json:
        print(report.model_dump_json(indent=2))
    else:
        _print_report(report)
    return report.exit_code


async def cmd_down(settings: Settings, args: argparse.Namespace) -> int:
    orchestrator = Orchestrator.from_settings(settings, client=_docker_client())
    state = await orchestrator.teardown(remove=args.remove)
    print(f"{settings.container_name}: {state.status.value}")
    return 0


async def cmd_status(settings: Settings, args: argparse.Namespace) -> int:
    manager = ContainerLifecycleManager(_docker_client())
    state = await manager.status(settings.container_name)
    print(f"Container {settings.container_name}: {state.status.value}")
    if state.id:
        print(f"  id={state.id[:12]} image={state.image} port={state.host_port}")
    for other in await manager.list_managed():
        if other.name != settings.container_name:
            print(f"  also managed: {other.name} ({other.status.value})")

    health = await HealthVerifier(settings.base_url, path=settings.health_path).check_once()
    if not health.reachable:
        print(f"Server {settings.base_url}: unreachable ({health.last_error})")
        return 1
    print(f"Server {settings.base_url}: healthy, version {health.reported_version}")
    return await cmd_models(settings, args)


async def cmd_restart(settings: Settings, args: argparse.Namespace) -> int:
    manager = ContainerLifecycleManager(_docker_client())
    state = await manager.restart(settings.container_name)
    print(f"{settings.container_name}: {state.status.value}")
    return 0


async def cmd_logs(settings: Settings, args: argparse.Namespace) -> int:
    manager = ContainerLifecycleManager(_docker_client())
    async for line in manager.tail_logs(
        settings.container_name,
        tail=args.tail,
        follow=not args.no_follow,
        timestamps=args.timestamps,
    ):
        print(line, flush=True)
    return 0


async def cmd_pull(settings: Settings, args: argparse.Namespace) -> int:
    registry = ModelRegistryClient(settings.base_url)
    last_shown = {"pct": -1}

    def show(record: ModelRecord) -> None:
        pct = int(record.progress * 100)
        if record.pull_status == PullStatus.PULLING and pct != last_shown["pct"]:
            last_shown["pct"] = pct
            print(f"{record.name}: {record.status_message} {pct}%", flush=True)

    registry.subscribe(show)
    try:
        timeout = args.timeout or settings.pull_timeout_seconds
        record = await registry.pull(args.model, timeout=timeout)
    finally:
        registry.unsubscribe(show)
        await registry.aclose()
    registry.raise_for_failure(record)
    print(f"{record.name}: ready ({_format_size(record.size_bytes)})")
    return 0


async def cmd_probe(settings: Settings, args: argparse.Namespace) -> int:
    prober = EnvironmentProber(gpu_mandatory=settings.gpu_mandatory)
    loop = asyncio.get_event_loop()
    snapshot = await loop.run_in_executor(None, prober.probe, False)
    print(f"Driver present:      {snapshot.driver_present} ({snapshot.driver_version or '-'})")
    print(f"Runtime GPU enabled: {snapshot.runtime_gpu_enabled}")
    print(f"Capabilities:        {', '.join(sorted(snapshot.capability_tags)) or '-'}")
    for gpu in snapshot.gpus:
        print(f"  GPU {gpu.index}: {gpu.name} ({_format_size(gpu.memory_total)})")
    if settings.gpu_mandatory:
        # Re-evaluate against the mandatory policy to report the precise error kind
        await loop.run_in_executor(None, prober.probe, True)
    return 0


async def cmd_models(settings: Settings, args: argparse.Namespace) -> int:
    registry = ModelRegistryClient(settings.base_url)
    models = await registry.list_models()
    if not models:
        print("No models resident")
    for record in models:
        print(f"  {record.name:<30} {_format_size(record.size_bytes)}")
    return 0


COMMANDS = {
    "up": cmd_up,
    "down": cmd_down,
    "status": cmd_status,
    "restart": cmd_restart,
    "logs": cmd_logs,
    "pull": cmd_pull,
    "probe": cmd_probe,
    "models": cmd_models,
}


# =============================================================================
# Entry point
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lmserve", description="Local GPU model-server lifecycle orchestrator"
    )
    parser.add_argument("--env-file", default=None, help="Settings file (default: .env)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    up = sub.add_parser("up", help="Deploy the server and ensure models")
    up.add_argument("--json", action="store_true", help="Print the run report as JSON")

    down = sub.add_parser("down", help="Stop the server container")
    down.add_argument("--remove", action="store_true", help="Remove the container too")

    sub.add_parser("status", help="Show container and server status")
    sub.add_parser("restart", help="Restart the server container")

    logs = sub.add_parser("logs", help="Tail container logs")
    logs.add_argument("--tail", type=int, default=100, help="Lines of history to show")
    logs.add_argument("--no-follow", action="store_true", help="Print and exit")
    logs.add_argument("--timestamps", action="store_true", help="Prefix runtime timestamps")

    pull = sub.add_parser("pull", help="Pull a model")
    pull.add_argument("model", help="Model name, e.g. qwen2:0.5b")
    pull.add_argument("--timeout", type=float, default=None, help="Seconds to wait")

    sub.add_parser("probe", help="Check GPU driver and runtime integration")
    sub.add_parser("models", help="List resident models")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    settings = Settings(_env_file=args.env_file) if args.env_file else get_settings()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        return asyncio.run(COMMANDS[args.command](settings, args))
    except LMServeError as e:
        logger.error(e.message)
        if getattr(args, "json", False):
            print(json.dumps({**e.to_dict(), "exit_code": e.exit_code}, indent=2))
        if e.remediation:
            print(f"Hint: {e.remediation}", file=sys.stderr)
        return e.exit_code
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
