#!/usr/bin/env python3
"""CLI entry point for stack-driver.

Commands:
- plan:      Show the deployment layers of a stack file
- render:    Render a manifest template and print the result
- run:       Deploy every unit of a stack file
- preflight: Check that the provisioning API is reachable
- kinds:     List the available unit kinds

Exit codes: 0 on success, 1 if any unit failed or was skipped (or a check
failed), 2 on invalid configuration or a dependency cycle.
"""

import argparse
import dataclasses
import json
import logging
import os
import sys
import threading
import time
from pathlib import Path
from typing import Optional

from config import ConfigError, load_namespace
from manifest import TemplateError, load_bundle, render
from provisioner import DryRunProvisioner, HttpProvisioner
from readiness import run_preflight
from stack_opr.executor import StackOrchestrator
from stack_opr.graph import GraphError
from stack_opr.registry import OutputKey, OutputRegistry, RegistryError
from stackfile import load_stackfile
from stacks import list_kinds

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2

COMMANDS = {
    "plan": "Show deployment layers (no changes)",
    "render": "Render a manifest template to stdout",
    "run": "Deploy all units of a stack file",
    "preflight": "Check provisioning API reachability",
    "kinds": "List available unit kinds",
}

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def print_usage():
    """Print top-level usage showing commands."""
    print("Usage: stack-driver <command> [options]")
    print()
    print("Commands:")
    for name, desc in COMMANDS.items():
        print(f"  {name:<12} {desc}")
    print()
    print("Run 'stack-driver <command> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  stack-driver plan -f examples/customer-service/stack.yaml")
    print("  stack-driver run -f examples/customer-service/stack.yaml --dry-run")
    print("  stack-driver render -m k8s/app.yaml --set account=123456789012")
    print("  stack-driver preflight --api-endpoint https://provisioner.local:8443")


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _common_parser(command: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with options shared by every command."""
    parser = argparse.ArgumentParser(prog=f'stack-driver {command}', description=description)
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    return parser


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--config', '-c',
        type=Path,
        help='Config YAML (default: $STACK_DRIVER_CONFIG or config/ beside the stack file)',
    )
    parser.add_argument(
        '--set',
        dest='overrides',
        action='append',
        default=[],
        metavar='KEY=VALUE',
        help='Override a config value (dotted key, repeatable)',
    )


def _add_api_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--api-endpoint',
        default=os.environ.get('STACK_DRIVER_API_ENDPOINT'),
        help='Provisioning API base URL (override: STACK_DRIVER_API_ENDPOINT env var)',
    )
    parser.add_argument(
        '--api-token',
        default=os.environ.get('STACK_DRIVER_API_TOKEN', ''),
        help='Provisioning API token (override: STACK_DRIVER_API_TOKEN env var)',
    )
    parser.add_argument(
        '--insecure', '-k',
        action='store_true',
        help='Skip TLS certificate verification',
    )


def _load_stack(args):
    """Load the stack file and config namespace from parsed args.

    Raises:
        ConfigError: On a missing or invalid stack/config file
    """
    definition = load_stackfile(args.stackfile)
    if getattr(args, 'workers', None) is not None:
        definition.settings = dataclasses.replace(definition.settings, workers=args.workers)
    namespace = load_namespace(
        config_file=args.config,
        stackfile_dir=args.stackfile.parent,
        overrides=args.overrides,
    )
    return definition, namespace


def plan_main(argv: list) -> int:
    """Handle 'plan' command."""
    parser = _common_parser('plan', 'Show the deployment layers of a stack file')
    parser.add_argument('--stackfile', '-f', type=Path, required=True, help='Stack file path')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        definition = load_stackfile(args.stackfile)
        layers = StackOrchestrator(definition, provisioner=DryRunProvisioner()).plan()
    except (ConfigError, GraphError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    if args.json_output:
        print(json.dumps({'name': definition.name, 'layers': layers}, indent=2))
        return EXIT_OK

    print(f"Stack '{definition.name}': {len(definition.units)} unit(s), {len(layers)} layer(s)")
    for index, layer in enumerate(layers):
        print(f"  Layer {index}:")
        for name in layer:
            unit = definition.get_unit(name)
            deps = f"  (after: {', '.join(unit.depends_on)})" if unit.depends_on else ''
            print(f"    - {name:<20} {unit.kind:<12}{deps}")
    return EXIT_OK


def _parse_outputs(values: list[str]) -> OutputRegistry:
    """Build a registry from NAME=VALUE pairs (dotted keys or export names)."""
    registry = OutputRegistry()
    for index, expr in enumerate(values):
        if '=' not in expr:
            raise ConfigError(f"--output must be NAME=VALUE, got '{expr}'")
        name, value = expr.split('=', 1)
        try:
            registry.publish(OutputKey.parse(name), value)
        except ValueError:
            registry.publish(OutputKey('cli', 'export', f'o{index}'), value, export=name)
    return registry


def render_main(argv: list) -> int:
    """Handle 'render' command."""
    parser = _common_parser('render', 'Render a manifest template and print the result')
    parser.add_argument('--manifest', '-m', type=Path, required=True, help='Manifest template path')
    parser.add_argument(
        '--output', '-o',
        dest='outputs',
        action='append',
        default=[],
        metavar='NAME=VALUE',
        help='Supply an output value (unit.node.output or export name, repeatable)',
    )
    _add_config_args(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        namespace = load_namespace(
            config_file=args.config,
            stackfile_dir=args.manifest.parent,
            overrides=args.overrides,
        )
        registry = _parse_outputs(args.outputs)
    except (ConfigError, RegistryError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    try:
        bundle = render(load_bundle(args.manifest), namespace, registry)
    except TemplateError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED

    if args.json_output:
        print(json.dumps([doc.body for doc in bundle], indent=2))
    else:
        print(bundle.to_yaml(), end='')
    return EXIT_OK


def _build_provisioner(args):
    if args.dry_run:
        return DryRunProvisioner()
    if not args.api_endpoint:
        raise ConfigError("--api-endpoint is required unless --dry-run is given")
    return HttpProvisioner(args.api_endpoint, token=args.api_token, verify=not args.insecure)


def _run_interruptible(orchestrator: StackOrchestrator):
    """Run all units on a background thread so Ctrl-C can abort cooperatively."""
    outcome: dict = {}

    def target():
        try:
            outcome['report'] = orchestrator.run_all()
        except BaseException as e:
            outcome['error'] = e

    thread = threading.Thread(target=target, name='stack-run', daemon=True)
    thread.start()
    while thread.is_alive():
        try:
            thread.join(0.5)
        except KeyboardInterrupt:
            if orchestrator.cancelled:
                print("\nAbort already requested, waiting for in-flight units...",
                      file=sys.stderr)
            else:
                orchestrator.abort()

    if 'error' in outcome:
        raise outcome['error']
    return outcome['report']


def _print_preflight(endpoint: str, results: list) -> None:
    print(f"\nPre-flight checks for {endpoint}:")
    for name, ok, msg in results:
        mark = "✓" if ok else "✗"
        print(f"  {mark} {name}: {msg}")
    print()


def run_main(argv: list) -> int:
    """Handle 'run' command."""
    parser = _common_parser('run', 'Deploy every unit of a stack file')
    parser.add_argument('--stackfile', '-f', type=Path, required=True, help='Stack file path')
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview operations without calling the provisioning API',
    )
    parser.add_argument(
        '--workers',
        type=int,
        help='Maximum units deployed concurrently (overrides settings.workers)',
    )
    parser.add_argument(
        '--report',
        type=Path,
        help='Write the run report as JSON to this path',
    )
    parser.add_argument(
        '--skip-preflight',
        action='store_true',
        help='Skip pre-flight validation checks',
    )
    _add_config_args(parser)
    _add_api_args(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        definition, namespace = _load_stack(args)
        provisioner = _build_provisioner(args)
        orchestrator = StackOrchestrator(definition, provisioner=provisioner, namespace=namespace)
        orchestrator.plan()
    except (ConfigError, GraphError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    if not args.dry_run and not args.skip_preflight:
        results = run_preflight(args.api_endpoint, args.api_token, verify=not args.insecure)
        if not all(ok for _, ok, _ in results):
            _print_preflight(args.api_endpoint, results)
            print("Use --skip-preflight to bypass these checks")
            return EXIT_FAILED
        logger.info("Pre-flight validation passed")

    logger.info(f"Deploying stack '{definition.name}' "
                f"({len(definition.units)} unit(s), {definition.settings.workers} worker(s))")
    start = time.time()
    try:
        report = _run_interruptible(orchestrator)
    except GraphError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    duration = time.time() - start

    if args.report:
        report.save(args.report)
    if args.json_output:
        output = report.to_dict()
        output['duration_seconds'] = round(duration, 2)
        print(json.dumps(output, indent=2))
    else:
        print(report.format_table())

    return EXIT_OK if report.success else EXIT_FAILED


def preflight_main(argv: list) -> int:
    """Handle 'preflight' command."""
    parser = _common_parser('preflight', 'Check provisioning API reachability')
    _add_api_args(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    if not args.api_endpoint:
        print("Error: --api-endpoint is required", file=sys.stderr)
        return EXIT_CONFIG

    results = run_preflight(args.api_endpoint, args.api_token, verify=not args.insecure)
    success = all(ok for _, ok, _ in results)
    if args.json_output:
        print(json.dumps({
            'endpoint': args.api_endpoint,
            'success': success,
            'checks': [{'name': n, 'ok': ok, 'message': m} for n, ok, m in results],
        }, indent=2))
    else:
        _print_preflight(args.api_endpoint, results)
    return EXIT_OK if success else EXIT_FAILED


def kinds_main(argv: list) -> int:
    """Handle 'kinds' command."""
    parser = _common_parser('kinds', 'List available unit kinds')
    args = parser.parse_args(argv)
    if args.json_output:
        print(json.dumps(list_kinds()))
    else:
        for name in list_kinds():
            print(name)
    return EXIT_OK


HANDLERS = {
    "plan": plan_main,
    "render": render_main,
    "run": run_main,
    "preflight": preflight_main,
    "kinds": kinds_main,
}


def main(argv: Optional[list] = None) -> int:
    """CLI entry point: dispatch to command handlers."""
    argv = sys.argv[1:] if argv is None else argv
    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return EXIT_OK

    command = argv[0]
    handler = HANDLERS.get(command)
    if handler is None:
        print(f"Error: Unknown command '{command}'")
        print_usage()
        return EXIT_FAILED
    return handler(argv[1:])


if __name__ == '__main__':
    sys.exit(main())
