import numpy as np
import pytest

from shadermat import DimensionMismatch, InvalidDimensions, multiply, scale
from shadermat.matrix import identity, random_matrix
from shadermat.ops import EPSILON, tolerance


def test_multiply_concrete_scenario() -> None:
    a = [[1, 2], [3, 4]]
    b = [[5, 6], [7, 8]]

    assert multiply(a, b, 2, 2, 2, 2) == [[19.0, 22.0], [43.0, 50.0]]


def test_scale_concrete_scenario() -> None:
    assert scale([[1, 2], [3, 4]], 2, 2, 2) == [[2.0, 4.0], [6.0, 8.0]]


def test_results_are_lists_of_floats() -> None:
    out = multiply(np.ones((2, 3)), np.ones((3, 1)), 3, 2, 1, 3)

    assert isinstance(out, list)
    assert all(isinstance(row, list) for row in out)
    assert all(type(v) is float for row in out for v in row)
    assert out == [[3.0], [3.0]]


def test_multiply_matches_numpy() -> None:
    rng = np.random.default_rng(0)
    a = rng.standard_normal((5, 7))
    b = rng.standard_normal((7, 2))

    np.testing.assert_allclose(multiply(a, b, 7, 5, 2, 7), a @ b, rtol=1e-12, atol=1e-12)


def test_identity_is_neutral() -> None:
    rng = np.random.default_rng(1)
    a = random_matrix(4, 4, rng)

    assert multiply(a, identity(4), 4, 4, 4, 4) == a
    assert multiply(identity(4), a, 4, 4, 4, 4) == a


def test_scale_composes() -> None:
    rng = np.random.default_rng(2)
    a = random_matrix(3, 5, rng)

    twice = scale(scale(a, 3, 5, 1.5), 3, 5, -4.0)
    np.testing.assert_allclose(twice, scale(a, 3, 5, -6.0), rtol=1e-12)
    assert scale(a, 3, 5, 0.0) == [[0.0] * 5 for _ in range(3)]


def test_scale_by_one_returns_input() -> None:
    rng = np.random.default_rng(4)
    a = random_matrix(5, 3, rng)

    assert scale(a, 5, 3, 1.0) == a
    assert scale(np.asarray(a), 5, 3, 1) == a


def test_multiply_rejects_mismatched_shared_dimension() -> None:
    with pytest.raises(DimensionMismatch):
        multiply([[1, 2]], [[1, 2]], 2, 1, 2, 1)


@pytest.mark.parametrize(
    "a, width, height",
    [
        ([[1, 2], [3, 4], [5, 6]], 2, 2),
        ([[1, 2], [3]], 2, 2),
        (np.zeros((2, 3)), 2, 2),
    ],
)
def test_declared_shape_must_match(a, width, height) -> None:
    with pytest.raises(DimensionMismatch):
        scale(a, height, width, 1.0)


@pytest.mark.parametrize("a", [np.array([["1", "2"], ["3", "4"]]), [["1", "2"], ["3", "4"]], [[1.0, None], [3.0, 4.0]]])
def test_entries_must_be_numbers(a) -> None:
    with pytest.raises(DimensionMismatch, match="must be numbers"):
        scale(a, 2, 2, 2.0)


@pytest.mark.parametrize("dims", [(0, 2), (2, -1), (2.0, 2), (True, 1)])
def test_dimensions_must_be_positive_integers(dims) -> None:
    rows, cols = dims
    with pytest.raises(InvalidDimensions):
        scale([[1.0]], rows, cols, 1.0)


def test_dimension_errors_are_value_errors() -> None:
    with pytest.raises(ValueError):
        multiply([[1.0]], [[1.0]], 1, 1, 1, 0)


def test_random_matrix_range() -> None:
    m = np.asarray(random_matrix(16, 8, np.random.default_rng(3)))

    assert m.shape == (16, 8)
    assert m.min() >= 0.0 and m.max() <= 1000.0
    np.testing.assert_allclose(m, np.round(m, 2))


def test_tolerance() -> None:
    assert tolerance(1) == 1e-6
    assert tolerance(2**20) == pytest.approx(2**20 * 2 * EPSILON)
    assert tolerance(64, magnitude=1e6) == pytest.approx(64 * 2**-22 * 1e6)
