#!/usr/bin/env python3
"""
Command-line interface for the fulfillment service.

Usage:
    python cli.py [command] [options]

Commands:
    demo        Run demo scenarios
    rates       Shop carrier rates for a package
    test        Run the test suite
    serve       Start the API server

Examples:
    python cli.py demo lifecycle
    python cli.py demo all
    python cli.py rates --weight 2.5 --cod 1200
    python cli.py serve --reload
"""

import argparse
import subprocess
import sys

from shared.config import configure_logging, get_settings


def run_demo(scenario: str) -> None:
    """Run a demo scenario."""
    from fulfillment.demo import DEMOS, run_all_demos

    if scenario == "all":
        run_all_demos()
    elif scenario in DEMOS:
        DEMOS[scenario]()
    else:
        print(f"Unknown scenario: {scenario}")
        sys.exit(1)


def run_rates(weight_kg: float, cod_amount: float) -> None:
    """Print the ranked carrier options for a package."""
    from fulfillment.services.carrier_registry import CarrierRegistry
    from fulfillment.services.rate_shopper import RateShopper

    registry = CarrierRegistry.from_file(get_settings().carriers_path)
    try:
        options = RateShopper(registry).shop(weight_kg, cod_amount)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(2)

    if not options:
        print(f"No carrier can take a {weight_kg}kg package" + (" with COD" if cod_amount else ""))
        sys.exit(1)

    print(f"\nRates for {weight_kg}kg" + (f", COD {cod_amount:.2f}" if cod_amount else "") + ":\n")
    for option in options:
        marker = "*" if option.recommended else " "
        print(f" {marker} {option.carrier_name:<14} {option.cost:>8.2f}  {option.estimated_days} day(s)")
    print("\n * recommended")


def run_tests(args: list[str]) -> None:
    """Run the test suite."""
    cmd = [sys.executable, "-m", "pytest"] + args
    sys.exit(subprocess.run(cmd).returncode)


def run_server(host: str, port: int, reload: bool) -> None:
    """Start the API server."""
    cmd = [sys.executable, "-m", "uvicorn", "api.main:app", f"--host={host}", f"--port={port}"]
    if reload:
        cmd.append("--reload")

    print(f"Starting server at http://{host}:{port}")
    print(f"API docs available at http://{host}:{port}/docs")
    subprocess.run(cmd)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Order Fulfillment & Notification Coordinator CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s demo lifecycle
  %(prog)s demo quiet-hours
  %(prog)s rates --weight 2 --cod 500
  %(prog)s test -v
  %(prog)s serve --reload
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    demo_parser = subparsers.add_parser("demo", help="Run demo scenarios")
    demo_parser.add_argument(
        "scenario",
        choices=["lifecycle", "duplicate-webhook", "quiet-hours", "all"],
        help="Which scenario to run",
    )

    rates_parser = subparsers.add_parser("rates", help="Shop carrier rates")
    rates_parser.add_argument("--weight", type=float, required=True, help="Package weight in kg")
    rates_parser.add_argument("--cod", type=float, default=0.0, help="Cash-on-delivery amount")

    test_parser = subparsers.add_parser("test", help="Run the test suite")
    test_parser.add_argument(
        "pytest_args",
        nargs=argparse.REMAINDER,
        help="Arguments to pass to pytest",
    )

    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    return parser


def main(argv: list[str] = None) -> None:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(get_settings().log_level)

    if args.command == "demo":
        run_demo(args.scenario)
    elif args.command == "rates":
        run_rates(args.weight, args.cod)
    elif args.command == "test":
        run_tests(args.pytest_args)
    elif args.command == "serve":
        run_server(args.host, args.port, args.reload)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
