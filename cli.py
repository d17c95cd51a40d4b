#!/usr/bin/env python3
"""
Command-line interface for the wholesale sync engine.

Usage:
    python cli.py [command] [options]

Commands:
    demo        Run demo scenarios
    test        Run the test suite
    serve       Start the API server

Examples:
    python cli.py demo checkout
    python cli.py demo all
    python cli.py test -v
    python cli.py serve --reload
"""

import argparse
import subprocess
import sys

SCENARIO_NAMES = ["checkout", "concurrent", "recovery", "offline", "all"]


def run_demo(scenario: str) -> None:
    """Run a demo scenario."""
    from sync_engine.demo import run_scenario
    run_scenario(scenario)


def run_tests(args: list[str]) -> int:
    """Run the test suite."""
    cmd = [sys.executable, "-m", "pytest"] + args
    return subprocess.run(cmd).returncode


def run_server(host: str, port: int, reload: bool) -> None:
    """Start the API server."""
    import uvicorn

    print(f"Starting server at http://{host}:{port}")
    print(f"API docs available at http://{host}:{port}/docs")
    uvicorn.run("api.main:app", host=host, port=port, reload=reload)


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Wholesale Sync Engine CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s demo checkout
  %(prog)s demo concurrent
  %(prog)s demo all
  %(prog)s test -v
  %(prog)s serve --reload
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Demo command
    demo_parser = subparsers.add_parser("demo", help="Run demo scenarios")
    demo_parser.add_argument(
        "scenario",
        choices=SCENARIO_NAMES,
        help="Which scenario to run",
    )

    # Test command
    test_parser = subparsers.add_parser("test", help="Run the test suite")
    test_parser.add_argument(
        "pytest_args",
        nargs="*",
        default=[],
        help="Arguments to pass to pytest",
    )

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    args = parser.parse_args()

    if args.command == "demo":
        run_demo(args.scenario)
    elif args.command == "test":
        sys.exit(run_tests(args.pytest_args))
    elif args.command == "serve":
        run_server(args.host, args.port, args.reload)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
