#!/usr/bin/env python3
"""
cli.py - Command line entry point for phaseflow.

Usage:
    phaseflow import path/to/package
    phaseflow list [--tag TAG]
    phaseflow deps novel-pipeline [--version 1.2.0]
    phaseflow export novel-pipeline --format json
    phaseflow capabilities [--package path/to/package]
    phaseflow run novel-pipeline --var genre=noir --auto-approve
    phaseflow serve [--host 127.0.0.1] [--port 5002]

Global options:
    --db PATH      DuckDB file (overrides PHASEFLOW_DB_PATH)
    -v/--verbose   Debug logging (otherwise PHASEFLOW_LOG_LEVEL, default INFO)
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional, Set

from .config.runtime_config import get_log_level, load_settings
from .runtime.errors import WorkflowError
from .runtime.service import WorkflowService
from .runtime.types import EventKind, ExecutionContext, InstanceStatus, PhaseEvent

logger = logging.getLogger(__name__)


def _parse_vars(pairs: Optional[List[str]]) -> Dict[str, str]:
    variables: Dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got {pair!r}")
        variables[key] = value
    return variables


def _build_service(args: argparse.Namespace) -> WorkflowService:
    settings = load_settings()
    if args.db is not None:
        settings = settings.with_overrides(db_path=args.db)
    return WorkflowService(settings)


# =============================================================================
# Commands
# =============================================================================


def cmd_import(service: WorkflowService, args: argparse.Namespace) -> int:
    result = service.import_package(args.path)
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.success else 1


def cmd_list(service: WorkflowService, args: argparse.Namespace) -> int:
    for definition in service.list_definitions(tag=args.tag):
        tags = f"  [{', '.join(definition.tags)}]" if definition.tags else ""
        print(f"{definition.id}@{definition.version}  {definition.name}{tags}")
    return 0


def cmd_deps(service: WorkflowService, args: argparse.Namespace) -> int:
    report = service.check_dependencies(args.definition_id, args.version)
    print(json.dumps(report.to_dict(), indent=2))
    return 0 if report.all_installed else 1


def cmd_export(service: WorkflowService, args: argparse.Namespace) -> int:
    sys.stdout.write(service.export_definition(args.definition_id, args.version, args.format))
    return 0


def cmd_capabilities(service: WorkflowService, args: argparse.Namespace) -> int:
    print(json.dumps(service.list_capabilities(args.package), indent=2))
    return 0


def _prompt(loop: asyncio.AbstractEventLoop, text: str) -> "asyncio.Future[str]":
    """Read one line on a daemon thread; an unanswered prompt never blocks exit."""
    future: "asyncio.Future[str]" = loop.create_future()

    def deliver(answer: str) -> None:
        if not future.done():
            future.set_result(answer)

    def worker() -> None:
        try:
            answer = input(text)
        except EOFError:
            answer = ""
        try:
            loop.call_soon_threadsafe(deliver, answer)
        except RuntimeError:
            logger.debug("Prompt answered after the run ended")

    threading.Thread(target=worker, name="phaseflow-prompt", daemon=True).start()
    return future


async def _run_instance(service: WorkflowService, args: argparse.Namespace) -> InstanceStatus:
    loop = asyncio.get_running_loop()
    engine = service.engine
    prompts: Set["asyncio.Task[None]"] = set()

    async def ask(event: PhaseEvent) -> None:
        answer = await _prompt(
            loop, f"Approve phase {event.phase_index} ({event.phase_name})? [y/N] "
        )
        if answer.strip().lower() in ("y", "yes"):
            engine.grant_approval(event.instance_id, event.phase_index)
        else:
            engine.reject_approval(event.instance_id, event.phase_index, "Rejected at prompt")

    def on_event(event: PhaseEvent) -> None:
        line = f"[{event.seq}] {event.kind.value} phase {event.phase_index} {event.phase_name}"
        if event.error:
            line += f": {event.error}"
        print(line)
        if event.kind == EventKind.APPROVAL_REQUIRED:
            if args.auto_approve:
                engine.grant_approval(event.instance_id, event.phase_index)
            else:
                task = asyncio.ensure_future(ask(event))
                prompts.add(task)
                task.add_done_callback(prompts.discard)

    subscription = service.events.subscribe(on_event)
    try:
        context = ExecutionContext(
            project_id=args.project_id,
            project_folder=str(args.project_folder) if args.project_folder else None,
            variables=_parse_vars(args.var),
        )
        instance_id = await service.start(
            args.definition_id,
            context,
            version=args.version,
            start_phase_index=args.start_phase,
        )
        print(f"Started {instance_id}")
        try:
            instance = await engine.wait_for(instance_id)
        except asyncio.CancelledError:
            engine.cancel(instance_id)
            instance = await engine.wait_for(instance_id)
    finally:
        subscription.unsubscribe()
        for task in list(prompts):
            task.cancel()

    suffix = f" ({instance.error})" if instance.error else ""
    print(f"{instance_id}: {instance.status.value}{suffix}")
    return instance.status


def cmd_run(service: WorkflowService, args: argparse.Namespace) -> int:
    status = asyncio.run(_run_instance(service, args))
    return 0 if status == InstanceStatus.COMPLETED else 1


def cmd_serve(service: WorkflowService, args: argparse.Namespace) -> int:
    import uvicorn

    from .api import create_app

    print(f"Starting phaseflow API server at http://{args.host}:{args.port}")
    app = create_app(service, enable_cors=not args.no_cors)
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


# =============================================================================
# Entry point
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phaseflow",
        description="Import workflow packages and run them phase by phase",
    )
    parser.add_argument("--db", type=Path, default=None, help="DuckDB database file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("import", help="Import a workflow package folder")
    p.add_argument("path", type=Path)
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("list", help="List stored workflows (latest versions)")
    p.add_argument("--tag", default=None)
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("deps", help="Check a workflow's dependencies")
    p.add_argument("definition_id")
    p.add_argument("--version", default=None)
    p.set_defaults(func=cmd_deps)

    p = sub.add_parser("export", help="Export a workflow manifest")
    p.add_argument("definition_id")
    p.add_argument("--version", default=None)
    p.add_argument("--format", choices=("yaml", "json"), default="yaml")
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("capabilities", help="List installed (and bundled) agents and skills")
    p.add_argument("--package", type=Path, default=None, help="Also list a package's bundled files")
    p.set_defaults(func=cmd_capabilities)

    p = sub.add_parser("run", help="Run a workflow to completion")
    p.add_argument("definition_id")
    p.add_argument("--version", default=None)
    p.add_argument("--start-phase", type=int, default=0)
    p.add_argument("--project-id", default=None)
    p.add_argument("--project-folder", type=Path, default=None)
    p.add_argument("--var", action="append", metavar="KEY=VALUE", help="Context variable")
    p.add_argument("--auto-approve", action="store_true", help="Grant every approval")
    p.set_defaults(func=cmd_run)

    p = sub.add_parser("serve", help="Run the REST/SSE API server")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=5002)
    p.add_argument("--no-cors", action="store_true", help="Disable CORS")
    p.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else get_log_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    service = _build_service(args)
    try:
        return args.func(service, args)
    except WorkflowError as e:
        logger.error("%s: %s", e.kind, e.message)
        return 1
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
        return 2
    finally:
        service.close()


if __name__ == "__main__":
    sys.exit(main())
