"""gatedrun CLI entry point."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from gatedrun.config import ServerConfig, parse_bind_addr


def _check(policy_dir: Path | None, policy_file: Path | None) -> int:
    """Compile a policy set and report the result without serving."""
    from gatedrun.policy.store import ValidPolicy, load_policy_sources

    state = load_policy_sources(policy_dir, policy_file)
    if isinstance(state, ValidPolicy):
        print(f"OK: {state.module_count} module(s) from {state.source}")
        print(f"digest: {state.digest}")
        return 0
    print(f"DENY-ALL: {state.reason}", file=sys.stderr)
    return 1


def main():
    parser = argparse.ArgumentParser(
        prog="gatedrun",
        description="gatedrun: policy-gated remote command execution server",
    )

    subparsers = parser.add_subparsers(dest="command")

    # gatedrun serve
    serve_parser = subparsers.add_parser("serve", help="Start the execution server")
    serve_parser.add_argument(
        "--host",
        help="Host to bind to (default: GATEDRUN_BIND_ADDR or 127.0.0.1)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        help="Port to bind to (default: GATEDRUN_BIND_ADDR or 8000)",
    )
    serve_parser.add_argument(
        "--bind",
        help="host:port to bind to, overrides GATEDRUN_BIND_ADDR",
    )
    serve_parser.add_argument(
        "--policy-dir",
        type=Path,
        help="Directory of .rego modules, watched for changes (default: POLICY_DIR)",
    )
    serve_parser.add_argument(
        "--policy-file",
        type=Path,
        help="Legacy single .rego file, not watched (default: POLICY_FILE)",
    )
    serve_parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    # gatedrun check
    check_parser = subparsers.add_parser(
        "check", help="Compile a policy set and report whether it is valid"
    )
    check_parser.add_argument("--policy-dir", type=Path, help="Directory of .rego modules")
    check_parser.add_argument("--policy-file", type=Path, help="Single .rego file")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "check":
        if args.policy_dir is None and args.policy_file is None:
            check_parser.error("one of --policy-dir or --policy-file is required")
        sys.exit(_check(args.policy_dir, args.policy_file))

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        config = ServerConfig.from_env()
        host = port = None
        if args.bind:
            host, port = parse_bind_addr(args.bind)
        config = config.with_overrides(
            host=args.host or host,
            port=args.port or port,
            policy_dir=args.policy_dir,
            policy_file=args.policy_file,
        )
    except ValueError as exc:
        print(f"Error: invalid configuration: {exc}", file=sys.stderr)
        sys.exit(2)

    if config.policy_dir is None and config.policy_file is None:
        logging.getLogger(__name__).warning(
            "No policy source configured (POLICY_DIR / --policy-dir); every command will be denied"
        )

    # Create and run app
    import uvicorn

    from gatedrun.server import create_app

    app = create_app(config)
    uvicorn.run(app, host=config.host, port=config.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
