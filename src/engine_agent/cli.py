"""Command-line interface for Engine Agent."""

from __future__ import annotations

import argparse
import json
import sys
import threading
from typing import Any, List, Optional, Tuple

from engine_agent import __version__
from engine_agent.config import AgentConfig, parse_ports
from engine_agent.core.errors import EngineAgentError
from engine_agent.core.models import EngineSpec, GpuAllocation, ResourceLimits
from engine_agent.main import build_manager, run
from engine_agent.monitoring.resource_monitor import ResourceMonitor
from engine_agent.storage.artifact_store import ArtifactStore
from engine_agent.utils.logger import configure_logging


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="engine-agent",
        description="Engine Agent - run and supervise inference engine containers"
    )

    subparsers = parser.add_subparsers(
        dest="command",
        help="Available commands"
    )

    # Agent command (download, start, wait for signal, stop)
    run_parser = subparsers.add_parser(
        "run",
        help="Run the agent until SIGINT/SIGTERM"
    )
    run_parser.add_argument("--image", help="Engine image (default: ENGINE_AGENT_ENGINE_IMAGE)")
    run_parser.add_argument("--name", help="Engine container name")
    run_parser.add_argument("--model-url", help="URL of the model to download before start")
    run_parser.add_argument("--model-name", help="File name of the model in the model directory")
    run_parser.add_argument("--interval", type=float, help="Monitoring interval in seconds (default: 30)")

    # API server command
    api_parser = subparsers.add_parser(
        "api",
        help="Run the REST API server"
    )
    api_parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)"
    )
    api_parser.add_argument(
        "--port",
        type=int,
        default=8080,
        help="Port to bind to (default: 8080)"
    )

    # Monitor command (monitor only)
    monitor_parser = subparsers.add_parser(
        "monitor",
        help="Run only the resource monitor"
    )
    monitor_parser.add_argument(
        "--interval",
        type=float,
        default=30.0,
        help="Monitoring interval in seconds (default: 30)"
    )
    monitor_parser.add_argument("--disk-path", default="/", help="Filesystem to report (default: /)")

    subparsers.add_parser("sample", help="Print one resource sample")

    # Engine commands
    start_parser = subparsers.add_parser(
        "start",
        help="Start an engine container",
        description="Engine command arguments go after '--', e.g. start img c1 --gpus -1 -- --model /models/m.bin",
    )
    start_parser.add_argument("image", help="Image reference")
    start_parser.add_argument("name", help="Container name")
    start_parser.add_argument("--port", action="append", default=[], help="'8000/tcp=8000', repeatable")
    start_parser.add_argument("--cpu-quota", type=int, default=0, help="CFS quota, 100000 = one CPU")
    start_parser.add_argument("--memory", type=int, default=0, help="Memory limit in bytes")
    start_parser.add_argument("--gpus", type=int, default=0, help="GPU count, -1 for all")

    stop_parser = subparsers.add_parser("stop", help="Stop an engine container")
    stop_parser.add_argument("name", help="Container name")
    stop_parser.add_argument("--grace", type=float, default=None, help="Seconds before kill (default: 10)")

    list_parser = subparsers.add_parser("list", help="List engine containers")
    list_parser.add_argument("--all", action="store_true", help="Include containers not started by the agent")

    # Model commands
    models_parser = subparsers.add_parser("models", help="Manage model artifacts")
    models_sub = models_parser.add_subparsers(dest="models_command")
    models_sub.add_parser("list", help="List downloaded models")
    pull_parser = models_sub.add_parser("pull", help="Download a model")
    pull_parser.add_argument("url")
    pull_parser.add_argument("name")
    delete_parser = models_sub.add_parser("delete", help="Delete a model")
    delete_parser.add_argument("name")

    # Version command
    subparsers.add_parser(
        "version",
        help="Show version information"
    )
    return parser


def _split_engine_args(argv: List[str]) -> Tuple[List[str], List[str]]:
    """Split at the first ``--``: agent arguments before it, engine command after it."""
    if "--" not in argv:
        return argv, []
    i = argv.index("--")
    return argv[:i], argv[i + 1:]


def _start_spec(args: argparse.Namespace, command: List[str]) -> EngineSpec:
    gpu = GpuAllocation(count=args.gpus) if args.gpus else None
    return EngineSpec(
        image=args.image,
        name=args.name,
        command=tuple(command),
        ports=parse_ports(",".join(args.port)),
        limits=ResourceLimits(cpu_quota=args.cpu_quota, memory_bytes=args.memory, gpu=gpu),
    )


def main(argv: Optional[List[str]] = None) -> int:
    """
    Run the Engine Agent CLI.

    Args:
        argv: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    parser = _build_parser()
    argv, engine_args = _split_engine_args(list(sys.argv[1:] if argv is None else argv))
    args = parser.parse_args(argv)
    if engine_args and args.command != "start":
        parser.error("arguments after '--' are only accepted by 'start'")

    if args.command == "version":
        print(f"Engine Agent version {__version__}")
        return 0

    if args.command is None:
        parser.print_help()
        return 1

    try:
        config = AgentConfig.from_env()
        if args.command == "run":
            config = config.override(
                engine_image=args.image,
                engine_name=args.name,
                model_url=args.model_url,
                model_name=args.model_name,
                monitor_interval=args.interval,
            )
            return run(config)

        if args.command == "api":
            from engine_agent.api import run_server

            run_server(host=args.host, port=args.port)
            return 0

        configure_logging(config.log_level, config.log_file, config.log_format)

        if args.command == "monitor":
            monitor = ResourceMonitor(disk_path=args.disk_path)
            cancel = threading.Event()
            try:
                monitor.run_periodic(args.interval, cancel)
            except KeyboardInterrupt:
                cancel.set()
            return 0

        if args.command == "sample":
            _print_json(ResourceMonitor(disk_path=config.monitor_disk_path).sample_once().to_dict())
            return 0

        if args.command == "models":
            store = ArtifactStore(config.model_dir)
            try:
                if args.models_command == "list":
                    _print_json(store.list())
                elif args.models_command == "pull":
                    _print_json(store.transfer(args.url, args.name).to_dict())
                elif args.models_command == "delete":
                    store.delete(args.name)
                else:
                    parser.parse_args(["models", "--help"])
            finally:
                store.close()
            return 0

        manager = build_manager(config)
        if args.command == "start":
            _print_json(manager.start_engine(_start_spec(args, engine_args)).to_dict())
        elif args.command == "stop":
            print(manager.stop_engine(args.name, grace=args.grace).value)
        elif args.command == "list":
            _print_json([s.to_dict() for s in manager.list_engines(include_unmanaged=args.all)])
        return 0

    except (EngineAgentError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
