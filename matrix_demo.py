import argparse
import numpy as np

from shadermat import context, multiply, scale
from shadermat.bench import DEFAULT_SIZES, benchmark, format_results
from shadermat.matrix import format_matrix, random_matrix


def run_scenario() -> None:
    a = [[1.0, 2.0], [3.0, 4.0]]
    b = [[5.0, 6.0], [7.0, 8.0]]

    print("A:")
    print(format_matrix(a))
    print("B:")
    print(format_matrix(b))

    cpu = multiply(a, b, 2, 2, 2, 2)
    gpu = multiply(a, b, 2, 2, 2, 2, use_gpu=True)
    print("A @ B (cpu):")
    print(format_matrix(cpu))
    print("A @ B (gpu):")
    print(format_matrix(gpu))

    print("2 * A (gpu):")
    print(format_matrix(scale(a, 2, 2, 2.0, use_gpu=True)))


def run_random(size: int, factor: float, seed: int) -> None:
    rng = np.random.default_rng(seed)
    m = random_matrix(size, size, rng)
    scaled = scale(m, size, size, factor, use_gpu=True)
    err = float(np.max(np.abs(np.asarray(scaled) - factor * np.asarray(m))))
    print(f"{size}x{size} random matrix scaled by {factor}: max abs error vs CPU = {err:.3g}")


def main() -> None:
    parser = argparse.ArgumentParser(description="shadermat matrix demo")
    parser.add_argument("--factor", type=float, default=27.0, help="Scale factor for the random matrix demo")
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument("--no-bench", action="store_true", help="Skip the CPU vs GPU benchmark")
    args = parser.parse_args()

    ctx = context.get_context()
    if ctx is None:
        print("GPU unavailable; every result below comes from the CPU path.")
    else:
        print(f"GPU: {ctx.device_name} ({ctx.codec.name} texels)")

    run_scenario()
    run_random(8, args.factor, args.seed)

    if not args.no_bench:
        for op in ("multiply", "scale"):
            print(f"\n=== {op} ===")
            print(format_results(benchmark(DEFAULT_SIZES, operation=op, factor=args.factor, seed=args.seed)))


if __name__ == "__main__":
    main()
