from __future__ import annotations

import argparse
import logging
import os
import sys
import uuid

import uvicorn
from fastapi import FastAPI

from tickerlease.api.http_app import build_app
from tickerlease.logging_setup import configure_logging
from tickerlease.roles import SUPPORTED_ROLES, RuntimeRole, validate_role
from tickerlease.services.bootstrap import RuntimeContainer, build_runtime_container

DEFAULT_PORTS = {"api": 8000, "scheduler": 8100}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Ticker lease runtime entrypoint")
    parser.add_argument("--role", required=True, help="Runtime role")
    parser.add_argument("--host", default=os.getenv("APP_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument(
        "--holder-id",
        default=None,
        help="Lease holder id for this node (overrides TICKER_HOLDER_ID)",
    )
    parser.add_argument("--dry-run-startup", action="store_true", help="Validate startup and exit")
    parser.add_argument("--reload", action="store_true", help="Enable code reload (dev mode)")
    return parser.parse_args(argv)


def _app_for(role: RuntimeRole, run_id: str, container: RuntimeContainer) -> FastAPI:
    return build_app(
        role=role.name,
        run_id=run_id,
        scheduler_loop=container.scheduler_loop,
        api_deps=container.api_deps,
        on_startup=container.on_startup,
        on_shutdown=container.on_shutdown,
    )


def create_runtime_app() -> FastAPI:
    role = validate_role(os.getenv("APP_ROLE", "api"))
    configure_logging()
    return _app_for(role, str(uuid.uuid4()), build_runtime_container(role))


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        role = validate_role(args.role)
    except ValueError as exc:
        sys.stderr.write(f"ERROR: {exc}\n")
        sys.stderr.write(f"Try one of: {', '.join(SUPPORTED_ROLES)}\n")
        return 2

    if args.holder_id:
        # Read by the scheduler settings, and by reload workers started from the factory.
        os.environ["TICKER_HOLDER_ID"] = args.holder_id

    configure_logging()
    run_id = str(uuid.uuid4())
    logger = logging.getLogger("runtime")
    container = build_runtime_container(role)
    holder_id = container.scheduler_loop.holder_id if container.scheduler_loop is not None else None
    logger.info(
        "runtime initialized",
        extra={"role": role.name, "service": role.name, "run_id": run_id, "holder_id": holder_id},
    )

    if args.dry_run_startup:
        logger.info(
            "dry-run startup complete",
            extra={"role": role.name, "service": role.name, "run_id": run_id, "holder_id": holder_id},
        )
        return 0

    port = args.port if args.port is not None else DEFAULT_PORTS[role.name]
    if args.reload:
        os.environ["APP_ROLE"] = role.name
        uvicorn.run(
            "tickerlease.main:create_runtime_app",
            host=args.host,
            port=port,
            log_level="warning",
            reload=True,
            factory=True,
        )
        return 0

    uvicorn.run(_app_for(role, run_id, container), host=args.host, port=port, log_level="warning")
    return 0


if __name__ == "__main__":
    raise SystemExit(run())
