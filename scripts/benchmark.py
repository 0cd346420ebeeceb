#!/usr/bin/env python3
"""
FlowTX Performance Benchmarks

Measures throughput of the store's mutation paths and renders the results with
rich. Each benchmark scales its workload until one run takes at least
TIME_LIMIT_SECONDS.

Usage:
    python scripts/benchmark.py            # Run all benchmarks
    python scripts/benchmark.py --config   # Show current benchmark configuration
    python scripts/benchmark.py --quiet    # Only show the final table
"""

import argparse
import sys
import time
from typing import Any, Callable, Dict

# Add the project root to the Python path
sys.path.insert(0, ".")

from rich.align import Align
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from flowtx import TransactionalStore, TransactionManager, TransactionOptions

# Configuration constants - adjust these to change benchmark behavior
TIME_LIMIT_SECONDS = 1.0  # Minimum duration of the final run
STARTING_N = 10  # Starting number of operations
SCALE_FACTOR = 1.5  # How much to multiply N by each iteration

# Watchdogs would start one thread per transaction and dominate the timings.
NO_WATCHDOG = TransactionOptions(timeout=0)


def _new_store(observers: int = 1) -> TransactionalStore:
    store = TransactionalStore({"count": 0}, TransactionManager(NO_WATCHDOG))
    for _ in range(observers):
        store.subscribe_callbacks(lambda state: None)
    return store


class FlowTXBenchmark:
    """Rich-formatted display for FlowTX store benchmarks."""

    def __init__(self, quiet: bool = False):
        self.console = Console()
        self.quiet = quiet
        self.results: Dict[str, Dict[str, Any]] = {}

    def run_benchmarks(self):
        start_time = time.time()
        self._display_header()

        self._run("set_state", "Bare set_state", self._set_state)
        self._run("commit", "Begin / set / commit", self._commit)
        self._run("rollback", "Begin / set / rollback", self._rollback)
        self._run("execute", "execute_transaction", self._execute)
        self._run("fanout", "set_state with 100 observers", self._fanout)

        self._display_final_results(start_time)

    # ========================================================================
    # OPERATIONS
    # ========================================================================

    @staticmethod
    def _set_state(n: int) -> int:
        store = _new_store()
        for i in range(n):
            store.set_state({"count": i})
        return n

    @staticmethod
    def _commit(n: int) -> int:
        store = _new_store()
        for i in range(n):
            ctx = store.begin_transaction()
            store.set_state({"count": i})
            store.commit_transaction(ctx)
        return n

    @staticmethod
    def _rollback(n: int) -> int:
        store = _new_store()
        for i in range(n):
            ctx = store.begin_transaction()
            store.set_state({"count": i})
            store.rollback_transaction(ctx)
        assert store.get_state() == {"count": 0}
        return n

    @staticmethod
    def _execute(n: int) -> int:
        store = _new_store()
        for i in range(n):
            store.execute_transaction(lambda ctx, i=i: store.set_state({"count": i}))
        return n

    @staticmethod
    def _fanout(n: int) -> int:
        store = _new_store(observers=100)
        for i in range(n):
            store.set_state({"count": i})
        return n

    # ========================================================================
    # MEASUREMENT
    # ========================================================================

    def _run(self, key: str, name: str, operation: Callable[[int], int]):
        if not self.quiet:
            self.console.print(f"[yellow]Running {name}...[/yellow]")

        result = self._run_adaptive_benchmark(operation)
        result["name"] = name
        self.results[key] = result

        if not self.quiet:
            self.console.print(
                f"[green]✓[/green] {name}: "
                f"{result['operations_per_second']:,.0f} ops/sec ({result['max_n']} ops)"
            )

    @staticmethod
    def _run_adaptive_benchmark(operation: Callable[[int], int]) -> Dict[str, Any]:
        """Scale the workload until a single run reaches the time limit."""
        n = STARTING_N
        while True:
            start_time = time.perf_counter()
            performed = operation(n)
            operation_time = time.perf_counter() - start_time

            if operation_time >= TIME_LIMIT_SECONDS:
                return {
                    "max_n": n,
                    "operation_time": operation_time,
                    "operations_per_second": performed / operation_time,
                }
            n = int(n * SCALE_FACTOR)

    # ========================================================================
    # DISPLAY
    # ========================================================================

    def _display_header(self):
        header = Panel(
            Align.center("FlowTX Store Benchmark Suite"),
            title="FlowTX Benchmarks",
            border_style="blue",
        )
        self.console.print(header)
        self.console.print()

    def _display_final_results(self, start_time: float):
        elapsed = time.time() - start_time

        table = Table(title="Final Benchmark Results")
        table.add_column("Benchmark", style="cyan", no_wrap=True)
        table.add_column("Max Workload", style="magenta")
        table.add_column("Performance", style="green", justify="right")
        table.add_column("Latency", style="yellow", justify="right")

        for result in self.results.values():
            ops_k = result["operations_per_second"] / 1000
            latency_us = 1e6 / result["operations_per_second"]
            table.add_row(
                result["name"],
                f"{result['max_n']} ops",
                f"{ops_k:.1f}K ops/sec",
                f"{latency_us:.1f}μs",
            )

        self.console.print()
        self.console.print(table)
        self.console.print()
        self.console.print(f"[dim]Benchmark completed in {elapsed:.2f} seconds[/dim]")


def print_config():
    """Print the current benchmark configuration."""
    print("FlowTX Benchmark Configuration:")
    print(f"  TIME_LIMIT_SECONDS: {TIME_LIMIT_SECONDS}")
    print(f"  STARTING_N: {STARTING_N}")
    print(f"  SCALE_FACTOR: {SCALE_FACTOR}")


def main():
    parser = argparse.ArgumentParser(description="FlowTX Performance Benchmarks")
    parser.add_argument(
        "--config", action="store_true", help="Show current benchmark configuration"
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress progress output, show only final results",
    )
    args = parser.parse_args()

    if args.config:
        print_config()
        return

    if not args.quiet:
        print_config()
        print()

    FlowTXBenchmark(quiet=args.quiet).run_benchmarks()


if __name__ == "__main__":
    main()
