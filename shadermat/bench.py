from __future__ import annotations

"""CPU vs GPU timing for multiply and scale.

    python -m shadermat.bench --op multiply --sizes 2,4,8,16,32,64
"""

from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence

import argparse
import time

import numpy as np

from .matrix import random_matrix
from .ops import KernelState, kernel_states, multiply, scale


DEFAULT_SIZES = (2, 4, 8, 16, 32, 64)
DEFAULT_FACTOR = 27.0
OPERATIONS = ("multiply", "scale")


@dataclass(frozen=True)
class BenchmarkResult:
    size: int
    cpu_ms: float
    gpu_ms: float
    on_gpu: bool = False


def _time_ms(fn: Callable[[], object], warmup: int) -> float:
    for _ in range(warmup):
        fn()
    t0 = time.perf_counter_ns()
    fn()
    t1 = time.perf_counter_ns()
    return (t1 - t0) / 1e6


def benchmark(
    sizes: Iterable[int] = DEFAULT_SIZES,
    operation: str = "multiply",
    factor: float = DEFAULT_FACTOR,
    seed: int = 0,
    warmup: int = 1,
) -> List[BenchmarkResult]:
    """Time one square random matrix per size on both paths.

    `warmup` untimed calls precede each measurement, so the one-off shader
    compile is not counted against the GPU.
    """

    if operation not in OPERATIONS:
        raise ValueError(f"operation must be one of {OPERATIONS}, got {operation!r}")

    rng = np.random.default_rng(seed)
    results: List[BenchmarkResult] = []
    for n in sizes:
        a = random_matrix(n, n, rng)
        if operation == "multiply":
            b = random_matrix(n, n, rng)

            def run(use_gpu: bool) -> object:
                return multiply(a, b, n, n, n, n, use_gpu=use_gpu)

        else:

            def run(use_gpu: bool) -> object:
                return scale(a, n, n, factor, use_gpu=use_gpu)

        cpu_ms = _time_ms(lambda: run(False), warmup)
        gpu_ms = _time_ms(lambda: run(True), warmup)
        on_gpu = kernel_states()[operation] is KernelState.READY
        results.append(BenchmarkResult(size=int(n), cpu_ms=cpu_ms, gpu_ms=gpu_ms, on_gpu=on_gpu))
    return results


def format_results(results: Sequence[BenchmarkResult]) -> str:
    headers = ("Matrix Size", "CPU Time(ms)", "GPU Time(ms)")
    rows = [(f"{r.size}x{r.size}", f"{r.cpu_ms:.3f}", f"{r.gpu_ms:.3f}") for r in results]
    widths = [max([len(h)] + [len(row[i]) for row in rows]) for i, h in enumerate(headers)]
    lines = ["  ".join(h.ljust(w) for h, w in zip(headers, widths))]
    lines.append("  ".join("-" * w for w in widths))
    for row in rows:
        lines.append("  ".join(c.ljust(w) for c, w in zip(row, widths)))
    return "\n".join(lines)


def _parse_sizes(raw: str) -> List[int]:
    try:
        sizes = [int(s) for s in raw.split(",") if s.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"sizes must be comma-separated integers, got {raw!r}") from None
    if not sizes or any(s <= 0 for s in sizes):
        raise argparse.ArgumentTypeError("sizes must be positive")
    return sizes


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="shadermat CPU vs GPU benchmark")
    parser.add_argument("--op", choices=OPERATIONS, default="multiply", help="Operation to time")
    parser.add_argument(
        "--sizes",
        type=_parse_sizes,
        default=list(DEFAULT_SIZES),
        help="Comma-separated square matrix sizes",
    )
    parser.add_argument("--factor", type=float, default=DEFAULT_FACTOR, help="Scale factor for --op scale")
    parser.add_argument("--seed", type=int, default=0, help="RNG seed for the random matrices")
    args = parser.parse_args(argv)

    results = benchmark(args.sizes, operation=args.op, factor=args.factor, seed=args.seed)
    print(format_results(results))
    if results and not results[-1].on_gpu:
        print("(GPU unavailable: the GPU column timed the CPU fallback)")


if __name__ == "__main__":
    main()
