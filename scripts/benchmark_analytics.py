#!/usr/bin/env python3
"""
Query benchmark for the Tenant Analytics API

Usage:
    python scripts/benchmark_analytics.py <api-key>
"""

import statistics
import sys
import time

import requests

RUNS = 5


def benchmark_queries(base_url: str, api_key: str):
    """Time each query RUNS times and print percentiles"""
    print(f"\n{'=' * 60}")
    print("BENCHMARK: Query Performance")
    print(f"{'=' * 60}")

    queries = [
        ("Search (type)", "/events/search?event_type=purchase&limit=100"),
        ("Search (property)", "/events/search?prop.benchmark=true&limit=100"),
        ("Analytics (7d, day)", "/analytics?interval=day"),
        ("Analytics (7d, hour)", "/analytics?interval=hour"),
        ("Usage (30 days)", "/analytics/usage?days=30"),
        ("Funnel (3 steps)", "/analytics/funnel?steps=page_view,signup,purchase&window=7d"),
        ("Listing (store)", "/events?limit=100"),
    ]

    session = requests.Session()
    session.headers["X-API-Key"] = api_key
    results = []

    for name, path in queries:
        times = []

        for _ in range(RUNS):
            start = time.perf_counter()
            try:
                response = session.get(f"{base_url}{path}", timeout=30)
                elapsed = (time.perf_counter() - start) * 1000

                if response.status_code == 200:
                    times.append(elapsed)
                else:
                    print(f"Error in {name}: Status {response.status_code} {response.text}")
            except requests.RequestException as e:
                print(f"Error in {name}: {e}")

        if times:
            ordered = sorted(times)
            results.append({
                "name": name,
                "p50": statistics.median(times),
                "p95": ordered[min(len(ordered) - 1, int(len(ordered) * 0.95))],
                "avg": statistics.mean(times),
            })

    print(f"\n{'Query':<25} {'P50':>10} {'P95':>10} {'Avg':>10}")
    print(f"{'-' * 58}")
    for r in results:
        print(f"{r['name']:<25} {r['p50']:>8.0f}ms {r['p95']:>8.0f}ms {r['avg']:>8.0f}ms")

    print(f"{'=' * 60}\n")
    return results


def main():
    if len(sys.argv) != 2:
        print("Usage: python scripts/benchmark_analytics.py <api-key>")
        sys.exit(1)

    base_url = "http://localhost:8000"

    try:
        response = requests.get(f"{base_url}/health/index", timeout=5)
        if response.status_code != 200:
            print(f"Error: aggregation index is not healthy: {response.text}")
            sys.exit(1)
    except requests.RequestException as e:
        print(f"Error: Cannot connect to API: {e}")
        sys.exit(1)

    benchmark_queries(base_url, sys.argv[1])


if __name__ == "__main__":
    main()
