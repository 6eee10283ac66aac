#!/usr/bin/env python3
"""
Command-line interface for the realtime coordination core.

Usage:
    uv run python cli.py [command] [options]

Commands:
    demo        Run demo scenarios
    seed        (Re)create the local store snapshot from the seed file
    test        Run the test suite
    serve       Start the API server

Examples:
    uv run python cli.py demo booking
    uv run python cli.py demo all
    uv run python cli.py seed --force
    uv run python cli.py serve
"""

import argparse
import asyncio
import subprocess
import sys


def run_demo(scenario: str) -> None:
    """Run a demo scenario."""
    if scenario == "booking":
        from realtime.demo import run_booking_demo
        run_booking_demo()
    elif scenario == "messaging":
        from realtime.demo import run_messaging_demo
        run_messaging_demo()
    elif scenario == "all":
        from realtime.demo import run_booking_demo, run_messaging_demo
        run_booking_demo()
        run_messaging_demo()
    else:
        print(f"Unknown scenario: {scenario}")
        sys.exit(1)


def run_seed(force: bool) -> None:
    """Write the local snapshot from data/seed.json."""
    from shared.config import load_settings
    from shared.data_store import LocalDataStore

    settings = load_settings()
    if settings.use_remote_store:
        print("USE_REMOTE_STORE is set; seeding only applies to the local store")
        sys.exit(1)

    if settings.store_path.exists():
        if not force:
            print(f"{settings.store_path} already exists (use --force to overwrite)")
            sys.exit(1)
        settings.store_path.unlink()

    store = LocalDataStore(store_path=settings.store_path, seed_path=settings.seed_path)
    asyncio.run(store.init())
    print(f"Seeded {settings.store_path} from {settings.seed_path}")


def run_tests(args: list[str]) -> None:
    """Run the test suite."""
    cmd = ["uv", "run", "pytest"] + args
    subprocess.run(cmd)


def run_server(host: str, port: int, reload: bool) -> None:
    """Start the API server."""
    cmd = ["uv", "run", "uvicorn", "api.main:app", f"--host={host}", f"--port={port}"]
    if reload:
        cmd.append("--reload")

    print(f"Starting server at http://{host}:{port}")
    print(f"API docs available at http://{host}:{port}/docs")
    subprocess.run(cmd)


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Realtime Coordination Core CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s demo booking
  %(prog)s demo messaging
  %(prog)s seed --force
  %(prog)s test -v
  %(prog)s serve --reload
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Demo command
    demo_parser = subparsers.add_parser("demo", help="Run demo scenarios")
    demo_parser.add_argument(
        "scenario",
        choices=["booking", "messaging", "all"],
        help="Which scenario to run",
    )

    # Seed command
    seed_parser = subparsers.add_parser("seed", help="Create the local store from the seed file")
    seed_parser.add_argument("--force", action="store_true", help="Overwrite an existing snapshot")

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
    elif args.command == "seed":
        run_seed(args.force)
    elif args.command == "test":
        run_tests(args.pytest_args)
    elif args.command == "serve":
        run_server(args.host, args.port, args.reload)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
