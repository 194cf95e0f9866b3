#!/usr/bin/env python3
"""Count live `visitor:` presence keys and cache the total under stats:activeVisitors.

Meant to run every minute (cron, systemd timer, or --loop). The cached value
backs the public GET /api/analytics/active counter; the admin endpoints count
live keys themselves.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import time

from dotenv import load_dotenv

from analytics import AnalyticsIngestor
from kv_store import KVStoreError, UpstashKV

logger = logging.getLogger("refresh_visitors")


def main() -> int:
    ap = argparse.ArgumentParser(description="Refresh the cached active-visitor count")
    ap.add_argument("--env-file", default=".env", help="dotenv file to load before reading config")
    ap.add_argument("--loop", action="store_true", help="keep running, refreshing every --interval seconds")
    ap.add_argument("--interval", type=int, default=60)
    args = ap.parse_args()

    load_dotenv(args.env_file)
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

    url = os.getenv("UPSTASH_REDIS_REST_URL", "")
    token = os.getenv("UPSTASH_REDIS_REST_TOKEN", "")
    if not url or not token:
        print("UPSTASH_REDIS_REST_URL and UPSTASH_REDIS_REST_TOKEN are required", file=sys.stderr)
        return 2

    analytics = AnalyticsIngestor(UpstashKV(url, token))

    while True:
        try:
            total = asyncio.run(analytics.refresh_active_visitors())
            print(f"[visitors] active={total}")
        except KVStoreError as e:
            logger.error("[visitors] refresh failed: %s", e)
            if not args.loop:
                return 1
        if not args.loop:
            return 0
        time.sleep(max(1, args.interval))


if __name__ == "__main__":
    raise SystemExit(main())
