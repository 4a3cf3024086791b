#!/usr/bin/env python3
"""
Ingestion benchmark for the Tenant Analytics API

Pushes events through the SDK's batching buffer and reports throughput.

Usage:
    python scripts/benchmark_ingestion.py <api-key> [total-events] [batch-size]
"""

import asyncio
import statistics
import sys
import time
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from analytics_sdk.client import Analytics, AnalyticsClientError

EVENT_TYPES = ["page_view", "button_click", "form_submit", "purchase", "signup"]


async def benchmark_ingestion(base_url: str, api_key: str, total_events: int, batch_size: int):
    """Track ``total_events`` events with automatic size-triggered flushes"""
    print(f"\n{'=' * 60}")
    print(f"BENCHMARK: Tracking {total_events:,} events (batch size {batch_size})")
    print(f"{'=' * 60}")

    track_times = []
    errors = 0

    # Long interval: flushes in this run are triggered by batch size
    analytics = Analytics(api_key, base_url=base_url, timeout=30, batch_size=batch_size, flush_interval=3600)
    await analytics.ping()

    start_time = time.perf_counter()
    async with analytics:
        for i in range(total_events):
            started = time.perf_counter()
            try:
                await analytics.track(
                    EVENT_TYPES[i % len(EVENT_TYPES)],
                    {"benchmark": True, "index": i},
                    user_id=f"user_{i % 10000}"  # 10k unique users
                )
            except AnalyticsClientError as e:
                errors += 1
                print(f"Flush failed at event {i}: {e.message} (events re-queued)")
            track_times.append(time.perf_counter() - started)

            if (i + 1) % (batch_size * 10) == 0:
                print(f"Progress: {i + 1:,} / {total_events:,} events")

    total_time = time.perf_counter() - start_time
    flush_times = sorted(track_times)[-max(1, total_events // batch_size):]

    print(f"\n{'=' * 60}")
    print("INGESTION RESULTS")
    print(f"{'=' * 60}")
    print(f"Total events:        {total_events:,}")
    print(f"Flush errors:        {errors:,}")
    print(f"Total time:          {total_time:.2f}s")
    print(f"Events/sec:          {total_events / total_time:,.0f}")
    print(f"Avg flush time:      {statistics.mean(flush_times) * 1000:.0f}ms")
    print(f"Max flush time:      {max(flush_times) * 1000:.0f}ms")
    print(f"{'=' * 60}\n")

    return total_time


def main():
    if len(sys.argv) < 2:
        print("Usage: python scripts/benchmark_ingestion.py <api-key> [total-events] [batch-size]")
        sys.exit(1)

    api_key = sys.argv[1]
    total_events = int(sys.argv[2]) if len(sys.argv) > 2 else 100000
    batch_size = int(sys.argv[3]) if len(sys.argv) > 3 else 1000
    base_url = "http://localhost:8000"

    print("\n" + "=" * 60)
    print("TENANT ANALYTICS API - INGESTION BENCHMARK")
    print(f"Target: {base_url}")
    print("=" * 60)

    try:
        asyncio.run(benchmark_ingestion(base_url, api_key, total_events, batch_size))
    except AnalyticsClientError as e:
        print(f"Error: Cannot reach API: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
