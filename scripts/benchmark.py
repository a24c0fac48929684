#!/usr/bin/env python3
"""
quarry Performance Benchmarks

Measures the hot paths of the cache with rich-formatted output:

- Cache build: creating and looking up queries by key
- Fetch dedup: many concurrent fetches of one key sharing a single call
- Notification batching: many writes to one query observed by many observers

Each benchmark scales its workload until one run takes TIME_LIMIT_SECONDS.

Usage:
    python scripts/benchmark.py            # Run all benchmarks
    python scripts/benchmark.py --config   # Show current benchmark configuration
"""

import argparse
import asyncio
import sys
import time
from typing import Any, Callable, Dict

# Add the project root to the Python path
sys.path.insert(0, ".")

from rich.align import Align
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from quarry import FocusManager, OnlineManager, QueryClient, QueryObserver, notify_manager

# Configuration constants - adjust these to change benchmark behavior
TIME_LIMIT_SECONDS = 1.0  # Maximum time allowed per run
STARTING_N = 10  # Starting workload size
SCALE_FACTOR = 1.5  # How much to multiply N by each iteration


def _new_client() -> QueryClient:
    return QueryClient(focus_manager=FocusManager(), online_manager=OnlineManager())


class QuarryBenchmark:
    """Rich-formatted display for quarry benchmarks."""

    def __init__(self):
        self.console = Console()
        self.results: Dict[str, Dict[str, Any]] = {}

    def run_benchmarks(self):
        start_time = time.time()
        self._display_header()

        self._run_build_benchmark()
        self._run_dedup_benchmark()
        self._run_batching_benchmark()

        self._display_final_results(start_time)

    def _display_header(self):
        header = Panel(
            Align.center("quarry Cache Benchmark Suite"),
            title="quarry Benchmarks",
            border_style="blue",
        )
        self.console.print(header)
        self.console.print()

    def _run_build_benchmark(self):
        self.console.print("[yellow]Running Cache Build benchmark...[/yellow]")

        def operation(n):
            client = _new_client()
            cache = client.get_query_cache()
            for i in range(n):
                cache.build(client, client.default_query_options({"query_key": ["item", i]}))
            # Second pass hits existing entries
            for i in range(n):
                cache.build(client, client.default_query_options({"query_key": ["item", i]}))
            return 2 * n

        result = self._run_adaptive_benchmark(operation)
        self.results["build"] = result
        self._display_benchmark_progress("Cache Build", result)

    def _run_dedup_benchmark(self):
        self.console.print("[yellow]Running Fetch Dedup benchmark...[/yellow]")

        def operation(n):
            calls = 0

            async def query_fn(context):
                nonlocal calls
                calls += 1
                await asyncio.sleep(0)
                return "value"

            async def run():
                client = _new_client()
                options = {"query_key": ["shared"], "query_fn": query_fn}
                await asyncio.gather(*(client.fetch_query(options) for _ in range(n)))

            asyncio.run(run())
            assert calls == 1
            return n

        result = self._run_adaptive_benchmark(operation)
        self.results["dedup"] = result
        self._display_benchmark_progress("Fetch Dedup", result)

    def _run_batching_benchmark(self):
        self.console.print("[yellow]Running Notification Batching benchmark...[/yellow]")

        def operation(n):
            deliveries = 0

            def listener(result):
                nonlocal deliveries
                deliveries += 1

            async def run():
                client = _new_client()
                client.set_query_data(["counter"], 0)
                observers = [
                    QueryObserver(client, {"query_key": ["counter"], "stale_time": float("inf")})
                    for _ in range(n)
                ]
                for observer in observers:
                    observer.subscribe(listener)

                with notify_manager.transaction():
                    for i in range(n):
                        client.set_query_data(["counter"], i + 1)
                await asyncio.sleep(0)

            asyncio.run(run())
            # One delivery per observer, however many writes
            assert deliveries == n
            return n * n

        result = self._run_adaptive_benchmark(operation)
        self.results["batching"] = result
        self._display_benchmark_progress("Notification Batching", result)

    def _run_adaptive_benchmark(self, operation_func: Callable[[int], int]) -> Dict[str, Any]:
        """Scale the workload until a single run reaches the time limit."""
        n = STARTING_N

        while True:
            start_time = time.time()
            ops_performed = operation_func(n)
            operation_time = time.time() - start_time

            current_result = {
                "max_n": n,
                "operation_time": operation_time,
                "operations_per_second": ops_performed / max(operation_time, 1e-9),
            }

            if operation_time >= TIME_LIMIT_SECONDS:
                return current_result
            n = int(n * SCALE_FACTOR)

    def _display_benchmark_progress(self, name: str, result: Dict[str, Any]):
        ops_sec = result["operations_per_second"]
        self.console.print(
            f"[green]✓[/green] {name}: {ops_sec:,.0f} ops/sec ({result['max_n']} items)"
        )

    def _display_final_results(self, start_time: float):
        elapsed = time.time() - start_time

        table = Table(title="Final Benchmark Results")
        table.add_column("Benchmark", style="cyan", no_wrap=True)
        table.add_column("Max Workload", style="magenta")
        table.add_column("Performance", style="green", justify="right")

        labels = {
            "build": ("Cache Build", "keys"),
            "dedup": ("Fetch Dedup", "concurrent fetches"),
            "batching": ("Notification Batching", "observers x writes"),
        }
        for key, (label, unit) in labels.items():
            if key not in self.results:
                continue
            result = self.results[key]
            table.add_row(
                label,
                f"{result['max_n']} {unit}",
                f"{result['operations_per_second'] / 1000:.1f}K ops/sec",
            )

        self.console.print()
        self.console.print(table)
        self.console.print(f"\nCompleted in {elapsed:.1f}s")


def print_config():
    """Print the current benchmark configuration."""
    print("quarry Benchmark Configuration:")
    print(f"  TIME_LIMIT_SECONDS: {TIME_LIMIT_SECONDS}")
    print(f"  STARTING_N: {STARTING_N}")
    print(f"  SCALE_FACTOR: {SCALE_FACTOR}")


def main():
    parser = argparse.ArgumentParser(description="quarry Performance Benchmarks")
    parser.add_argument(
        "--config", action="store_true", help="Show current benchmark configuration"
    )
    args = parser.parse_args()

    if args.config:
        print_config()
        return

    print_config()
    print()
    QuarryBenchmark().run_benchmarks()


if __name__ == "__main__":
    main()
