import pytest

from shadermat import bench
from shadermat.bench import BenchmarkResult, benchmark, format_results


def test_benchmark_multiply_on_cpu_fallback(install_context) -> None:
    install_context(None)

    results = benchmark(sizes=(2, 4, 8), operation="multiply", seed=1)

    assert [r.size for r in results] == [2, 4, 8]
    assert all(r.cpu_ms >= 0.0 and r.gpu_ms >= 0.0 for r in results)
    assert not any(r.on_gpu for r in results)


def test_benchmark_scale_with_fake_gpu(fake_ctx) -> None:
    results = benchmark(sizes=(2, 3), operation="scale", factor=27.0)

    assert [r.on_gpu for r in results] == [True, True]
    assert len(fake_ctx.compiled) == 1
    assert fake_ctx.textures.live_count == 0


def test_benchmark_rejects_unknown_operation() -> None:
    with pytest.raises(ValueError):
        benchmark(sizes=(2,), operation="transpose")


def test_format_results() -> None:
    text = format_results([BenchmarkResult(2, 0.0126, 1.5), BenchmarkResult(64, 12.5, 3.25)])
    lines = text.splitlines()

    assert lines[0].split("  ")[:1] == ["Matrix Size"]
    assert "CPU Time(ms)" in lines[0] and "GPU Time(ms)" in lines[0]
    assert set(lines[1]) <= {"-", " "}
    assert lines[2].split() == ["2x2", "0.013", "1.500"]
    assert lines[3].split() == ["64x64", "12.500", "3.250"]


def test_cli(install_context, capsys: pytest.CaptureFixture) -> None:
    install_context(None)

    bench.main(["--op", "scale", "--sizes", "2,4", "--factor", "3", "--seed", "5"])
    out = capsys.readouterr().out

    assert "Matrix Size" in out
    assert "4x4" in out
    assert "CPU fallback" in out


def test_cli_rejects_bad_sizes(capsys: pytest.CaptureFixture) -> None:
    with pytest.raises(SystemExit):
        bench.main(["--sizes", "2,x"])
    with pytest.raises(SystemExit):
        bench.main(["--sizes", "0"])
