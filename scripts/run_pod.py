#!/usr/bin/env python3
"""Run a flow pod, or check a URL against the pod's egress policy.

Usage:
    # Serve the pod on $PORT (default 1880):
    POD_NAME=pod-0 POD_SECRET=... python scripts/run_pod.py

    # Override host/port:
    python scripts/run_pod.py --host 127.0.0.1 --port 18080

    # Ask the egress guard about a URL without starting the server:
    python scripts/run_pod.py --check-url http://169.254.169.254/latest/meta-data

Environment Variables:
    POD_NAME: Identifier reported on /health
    POD_SECRET: Shared secret expected on load/unload (unset rejects all)
    PORT: Listen port
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def check_url(url: str) -> int:
    # Import here to avoid loading config before env vars are set
    from flowpod.config import get_settings
    from flowpod.service.egress import EgressGuard, SystemResolver

    settings = get_settings()
    resolver = SystemResolver(max_workers=settings.egress_dns_max_workers)
    guard = EgressGuard(
        resolver=resolver,
        dns_timeout=settings.egress_dns_timeout_seconds,
        blocked_suffixes=tuple(settings.egress_blocked_suffixes),
    )
    try:
        decision = await guard.evaluate(url)
    finally:
        resolver.close()
    addresses = ", ".join(decision.resolved_addresses) or "-"
    if decision.blocked:
        print(f"BLOCKED {url} ({decision.reason}) resolved: {addresses}")
        return 1
    print(f"ALLOWED {url} resolved: {addresses}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Run a flow pod")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address")
    parser.add_argument("--port", type=int, default=None, help="Listen port (defaults to $PORT)")
    parser.add_argument("--log-level", default="info", help="uvicorn log level")
    parser.add_argument("--check-url", metavar="URL", help="Evaluate URL against the egress policy and exit")
    args = parser.parse_args()

    if args.check_url:
        return asyncio.run(check_url(args.check_url))

    import uvicorn

    from flowpod.config import get_settings

    port = args.port or get_settings().port
    uvicorn.run("flowpod.app:app", host=args.host, port=port, log_level=args.log_level)
    return 0


if __name__ == "__main__":
    sys.exit(main())
