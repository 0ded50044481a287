#!/usr/bin/env python3
"""
MockAPI CLI

Command-line interface for the MockAPI runtime.

Commands:
    run         - Start the control API and supervise mock servers
    serve       - Serve one mock API in the foreground
    validate    - Validate a mock API definitions file

Examples:
    # Supervise every API in apis.yaml, restoring the ones marked active
    mockapi run apis.yaml --config mockapi.yaml

    # Serve a single API on port 3001
    mockapi serve apis.yaml --api users-api --port 3001

    # Check a definitions file
    mockapi validate apis.yaml
"""

import argparse
import logging
import sys
from typing import List, Optional

import uvicorn

from .common.config import LAUNCHERS, LOG_LEVELS, ConfigurationError, RuntimeSettings
from .common.repository import FileMockApiRepository, MockApiRepository
from .common.utils import DefinitionLoader
from .manager.control import create_control_app
from .manager.launcher import InProcessLauncher, ServerLauncher, SubprocessLauncher
from .manager.supervisor import MockServerSupervisor
from .server.log_sink import RepositoryLogSink
from .server.models import MockApiConfig
from .server.server import MockServer, MockServerConfig


def configure_logging(level: str):
    """Configure the root logger for CLI runs."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )


def build_launcher(settings: RuntimeSettings, repository: MockApiRepository) -> ServerLauncher:
    """Create the launcher selected by settings.launcher."""
    if settings.launcher == 'inprocess':
        return InProcessLauncher(
            host=settings.instance_host,
            log_sink=RepositoryLogSink(repository),
            log_level=settings.log_level,
            cors_enabled=settings.cors_enabled
        )
    return SubprocessLauncher(
        host=settings.instance_host,
        management_url=settings.effective_management_url,
        log_level=settings.log_level,
        cors_enabled=settings.cors_enabled
    )


def load_settings(args) -> RuntimeSettings:
    """Settings from --config and the environment, then CLI overrides."""
    settings = RuntimeSettings.load(args.config)
    if getattr(args, 'host', None):
        settings.control_host = args.host
    if getattr(args, 'port', None):
        settings.control_port = args.port
    if getattr(args, 'launcher', None):
        settings.launcher = args.launcher
    if getattr(args, 'log_level', None):
        settings.log_level = args.log_level
    settings.validate()
    return settings


def cmd_run(args):
    """
    Start the control API with a supervisor over a definitions file.

    Args:
        args: Parsed command-line arguments
    """
    try:
        settings = load_settings(args)
    except ConfigurationError as e:
        print(f"❌ {e}")
        sys.exit(1)

    configure_logging(settings.log_level)

    try:
        repository = FileMockApiRepository(args.definitions, log_path=args.request_log)
    except (FileNotFoundError, ValueError) as e:
        print(f"❌ Failed to load definitions: {e}")
        sys.exit(1)

    print(f"🎭 MockAPI Runtime")
    print(f"   Definitions: {args.definitions} ({len(repository.apis)} APIs)")
    print(f"   Ports: {settings.port_range_start}-{settings.port_range_end} (reserved: {settings.reserved_ports})")
    print(f"   Launcher: {settings.launcher}")
    print(f"   Control API: http://{settings.control_host}:{settings.control_port}")

    supervisor = MockServerSupervisor(
        repository,
        launcher=build_launcher(settings, repository),
        settings=settings
    )
    app = create_control_app(supervisor, repository)

    try:
        uvicorn.run(app, host=settings.control_host, port=settings.control_port, log_level=settings.log_level)
    except KeyboardInterrupt:
        print("\n\n👋 MockAPI stopped")


def select_api(definitions: List[dict], api_id: Optional[str]) -> MockApiConfig:
    """Pick one API from a definitions file (the only one if api_id is None)."""
    apis = [MockApiConfig.from_dict(d) for d in definitions]
    if api_id is None:
        if len(apis) != 1:
            raise ValueError(f"File defines {len(apis)} APIs; choose one with --api")
        return apis[0]
    for api in apis:
        if api.id == api_id:
            return api
    raise ValueError(f"API '{api_id}' not found (available: {', '.join(a.id for a in apis)})")


def cmd_serve(args):
    """
    Serve one mock API in the foreground.

    Args:
        args: Parsed command-line arguments
    """
    configure_logging(args.log_level)

    try:
        api = select_api(DefinitionLoader(args.definitions).load(), args.api)
    except (FileNotFoundError, ValueError) as e:
        print(f"❌ Failed to load mock API: {e}")
        sys.exit(1)

    print(f"🎭 MockAPI Mock Server")
    print(f"   API: {api.name} ({api.id})")
    print(f"   Endpoints: {len(api.endpoints)}")

    config = MockServerConfig(
        host=args.host,
        port=args.port,
        log_level=args.log_level,
        cors_enabled=not args.no_cors
    )
    server = MockServer(api, config=config)

    try:
        server.start()
    except KeyboardInterrupt:
        print("\n\n👋 Mock server stopped")


def cmd_validate(args):
    """
    Validate every mock API in a definitions file.

    Args:
        args: Parsed command-line arguments
    """
    print(f"✓ MockAPI Definition Validation")
    print(f"   File: {args.definitions}")

    try:
        definitions = DefinitionLoader(args.definitions).load()
    except (FileNotFoundError, ValueError) as e:
        print(f"❌ Failed to load definitions: {e}")
        sys.exit(1)

    print(f"   Total APIs: {len(definitions)}")
    print()

    errors = []
    seen = set()
    for index, definition in enumerate(definitions):
        label = definition.get('id') or f"#{index}"
        try:
            api = MockApiConfig.from_dict(definition)
        except (KeyError, TypeError, ValueError) as e:
            errors.append(f"{label}: {e}")
            continue
        if api.id in seen:
            errors.append(f"{label}: duplicate API id")
            continue
        seen.add(api.id)

        scenario_count = sum(len(endpoint.scenarios) for endpoint in api.endpoints)
        print(f"  • {api.name} ({api.id}): {len(api.endpoints)} endpoints, {scenario_count} scenarios")

    print()
    if errors:
        print("❌ Errors found:")
        for error in errors:
            print(f"   • {error}")
        sys.exit(1)

    print("✅ All validations passed!")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='mockapi',
        description="MockAPI - Mock API servers with scenario matching and lifecycle supervision",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Supervise all APIs in a definitions file
  %(prog)s run apis.yaml

  # Serve one API in the foreground
  %(prog)s serve apis.yaml --api users-api --port 3001

  # Validate definitions
  %(prog)s validate apis.yaml
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # --- RUN command ---
    run_parser = subparsers.add_parser('run', help='Start the control API and supervisor')
    run_parser.add_argument('definitions', help='Mock API definitions file (JSON or YAML)')
    run_parser.add_argument('-c', '--config', help='Runtime settings YAML file')
    run_parser.add_argument('--host', help='Control API bind address (default: 127.0.0.1)')
    run_parser.add_argument('-p', '--port', type=int, help='Control API port (default: 3000)')
    run_parser.add_argument('--launcher', choices=LAUNCHERS, help='How mock servers are launched (default: subprocess)')
    run_parser.add_argument('--request-log', help='Append request logs to this JSON-lines file')
    run_parser.add_argument('--log-level', choices=LOG_LEVELS, help='Log level (default: info)')

    # --- SERVE command ---
    serve_parser = subparsers.add_parser('serve', help='Serve one mock API in the foreground')
    serve_parser.add_argument('definitions', help='Mock API definitions file (JSON or YAML)')
    serve_parser.add_argument('-a', '--api', help='API id to serve (required if the file has several)')
    serve_parser.add_argument('--host', default='127.0.0.1', help='Bind address (default: 127.0.0.1)')
    serve_parser.add_argument('-p', '--port', type=int, default=3001, help='Port (default: 3001)')
    serve_parser.add_argument('--no-cors', action='store_true', help='Disable permissive CORS headers')
    serve_parser.add_argument('--log-level', choices=LOG_LEVELS, default='info', help='Log level (default: info)')

    # --- VALIDATE command ---
    validate_parser = subparsers.add_parser('validate', help='Validate a definitions file')
    validate_parser.add_argument('definitions', help='Mock API definitions file (JSON or YAML)')

    return parser


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == 'run':
        cmd_run(args)
    elif args.command == 'serve':
        cmd_serve(args)
    elif args.command == 'validate':
        cmd_validate(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == '__main__':
    main()
