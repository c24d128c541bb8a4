#!/usr/bin/env python3
"""Command line front end for the pipeline runner.

Exit codes: 0 success, 1 stage failure, 2 gate failure, 3 definition error,
4 cancelled.
"""

import argparse
import getpass
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional

import requests
from werkzeug.serving import make_server

from gantry import __version__, create_app
from gantry.config import Config
from gantry.errors import DefinitionError
from gantry.pipeline.builder import BuiltPipeline, StageGraphBuilder
from gantry.pipeline.cancel import CancelScope
from gantry.pipeline.executor import PipelineExecutor
from gantry.pipeline.gating import ApprovalRegistry, GateController
from gantry.pipeline.loader import PipelineLoader
from gantry.pipeline.schema import Environment, PipelineDefinition, PipelineParameters, StageKind
from gantry.secrets import Secrets

logger = logging.getLogger("gantry")

EXIT_DEFINITION_ERROR = DefinitionError.exit_code


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="gantry", description="Run staged deployment pipelines")
    parser.add_argument("--version", action="version", version=f"gantry {__version__}")
    parser.add_argument(
        "--log-level",
        default=Config.LOG_LEVEL,
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Execute a pipeline")
    _add_definition_args(run)
    run.add_argument(
        "--workspace",
        type=Path,
        default=Path.cwd(),
        help="Shared working directory for all stages",
    )
    run.add_argument(
        "--secrets",
        type=Path,
        default=None,
        help=f"YAML file of secrets (merged over {Config.SECRET_ENV_PREFIX}* variables)",
    )
    run.add_argument(
        "--log-dir",
        type=Path,
        default=Path(Config.LOG_DIR) if Config.LOG_DIR else None,
        help="Write per-stage logs under this directory",
    )
    run.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Cancel the whole run after this many seconds",
    )
    run.add_argument(
        "--approval-host",
        default=Config.APPROVAL_HOST,
        help="Interface the approval service binds to",
    )
    run.add_argument(
        "--approval-port",
        type=int,
        default=Config.APPROVAL_PORT,
        help="Port of the approval service (started only when an approval gate runs)",
    )
    run.add_argument(
        "--json",
        action="store_true",
        help="Print the run result as JSON instead of a summary",
    )

    validate = subparsers.add_parser("validate", help="Validate a pipeline and show the stage plan")
    _add_definition_args(validate)

    subparsers.add_parser("presets", help="List bundled preset pipelines")

    gates = subparsers.add_parser("gates", help="List gates waiting for approval")
    gates.add_argument("--url", default=Config.APPROVAL_URL, help="Approval service URL")

    approve = subparsers.add_parser("approve", help="Approve (or reject) a pending manual gate")
    approve.add_argument("gate", help="Gate (stage) name")
    approve.add_argument("--reject", action="store_true", help="Reject instead of approve")
    approve.add_argument("--by", default=None, help="Approver name (defaults to the current user)")
    approve.add_argument("--comment", default=None, help="Reason recorded with the decision")
    approve.add_argument("--url", default=Config.APPROVAL_URL, help="Approval service URL")

    return parser.parse_args(argv)


def _add_definition_args(parser: argparse.ArgumentParser) -> None:
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--definition", type=Path, help="Pipeline YAML file")
    source.add_argument("--preset", help="Bundled preset pipeline name")
    parser.add_argument(
        "--param",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Pipeline parameter (repeatable)",
    )
    parser.add_argument(
        "--environment",
        choices=[env.value for env in Environment],
        default=Environment.QA.value,
        help="Deployment target",
    )


def parse_params(pairs: List[str]) -> Dict[str, str]:
    """Parse repeated KEY=VALUE arguments."""
    values = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise DefinitionError(f"Invalid --param '{pair}' (expected KEY=VALUE)")
        values[key.strip()] = value
    return values


def _load_definition(args: argparse.Namespace, loader: PipelineLoader) -> PipelineDefinition:
    if args.preset:
        return loader.load_preset(args.preset)
    return loader.load_from_yaml(args.definition)


def _build(args: argparse.Namespace) -> BuiltPipeline:
    loader = PipelineLoader()
    definition = _load_definition(args, loader)
    for warning in loader.validate_pipeline(definition):
        logger.warning(warning)

    parameters = PipelineParameters(
        environment=Environment(args.environment),
        values=parse_params(args.param),
    )
    return StageGraphBuilder().build(definition, parameters)


def _needs_approval_service(pipeline: BuiltPipeline) -> bool:
    return any(b.enabled and b.stage.kind == StageKind.APPROVAL for b in pipeline.iter_stages())


def _start_approval_service(approvals: ApprovalRegistry, host: str, port: int):
    server = make_server(host, port, create_app(approvals), threaded=True)
    thread = threading.Thread(target=server.serve_forever, name="gantry-approvals", daemon=True)
    thread.start()
    logger.info(f"Approval service listening on http://{host}:{port} (use 'gantry approve <gate>')")
    return server


def cmd_run(args: argparse.Namespace) -> int:
    try:
        pipeline = _build(args)
        secrets = Secrets.from_env()
        if args.secrets:
            secrets = secrets.merged(Secrets.from_file(args.secrets))
    except DefinitionError as e:
        logger.error(str(e))
        return e.exit_code
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Cannot load secrets: {e}")
        return EXIT_DEFINITION_ERROR

    approvals = ApprovalRegistry()
    server = None
    if _needs_approval_service(pipeline):
        try:
            server = _start_approval_service(approvals, args.approval_host, args.approval_port)
        except OSError as e:
            logger.error(f"Cannot start approval service on port {args.approval_port}: {e}")
            return EXIT_DEFINITION_ERROR

    cancel = CancelScope(timeout=args.timeout)
    previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: cancel.cancel("interrupted"))

    executor = PipelineExecutor(
        gate_controller=GateController(approvals=approvals),
        secrets=secrets,
        workspace=args.workspace,
        log_dir=args.log_dir,
    )

    try:
        result = executor.execute(pipeline, cancel=cancel)
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        if server is not None:
            server.shutdown()

    if args.json:
        print(result.model_dump_json(indent=2))
    else:
        print(result.summary())

    return result.exit_code


def cmd_validate(args: argparse.Namespace) -> int:
    try:
        pipeline = _build(args)
    except DefinitionError as e:
        print(f"[ERR] {e}")
        return e.exit_code

    print(f"[OK] {pipeline.name} v{pipeline.definition.version} ({pipeline.parameters.environment.value})")
    for group in pipeline.groups:
        mode = "parallel" if group.parallel else "sequential"
        label = f" {group.name}" if group.name else ""
        print(f"  group {group.index}{label} [{mode}]")
        for built in group.stages:
            state = "run" if built.enabled else f"skip ({built.skip_reason})"
            print(f"    - {built.name} <{built.stage.kind.value}>: {state}")
    return 0


def cmd_presets(args: argparse.Namespace) -> int:
    loader = PipelineLoader()
    for name in loader.list_presets():
        print(name)
    return 0


def cmd_gates(args: argparse.Namespace) -> int:
    try:
        response = requests.get(f"{args.url.rstrip('/')}/gates", timeout=Config.HTTP_TIMEOUT_SECONDS)
        response.raise_for_status()
    except requests.RequestException as e:
        print(f"[ERR] Cannot reach approval service at {args.url}: {e}")
        return 1

    gates = response.json().get("gates", [])
    if not gates:
        print("No gates awaiting approval")
    for gate in gates:
        message = f": {gate['message']}" if gate.get("message") else ""
        print(f"{gate['gate_id']} (run {gate['run_id']}){message}")
    return 0


def cmd_approve(args: argparse.Namespace) -> int:
    action = "reject" if args.reject else "approve"
    url = f"{args.url.rstrip('/')}/gates/{args.gate}/{action}"
    payload = {"by": args.by or getpass.getuser(), "comment": args.comment}

    try:
        response = requests.post(url, json=payload, timeout=Config.HTTP_TIMEOUT_SECONDS)
    except requests.RequestException as e:
        print(f"[ERR] Cannot reach approval service at {args.url}: {e}")
        return 1

    if response.status_code != 200:
        try:
            error = response.json().get("error", response.text)
        except ValueError:
            error = response.text
        print(f"[ERR] {error}")
        return 1

    print(f"[OK] Gate '{args.gate}' {action}d")
    return 0


COMMANDS = {
    "run": cmd_run,
    "validate": cmd_validate,
    "presets": cmd_presets,
    "gates": cmd_gates,
    "approve": cmd_approve,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    return COMMANDS[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
