from __future__ import annotations

"""Host-side matrix helpers: validation, conversion, construction."""

from typing import Any, List, Optional, Sequence

import numpy as np

from .errors import DimensionMismatch, InvalidDimensions


Matrix = List[List[float]]
MatrixLike = Any


def check_dims(width: Any, height: Any) -> None:
    for label, v in (("width", width), ("height", height)):
        if isinstance(v, bool) or not isinstance(v, (int, np.integer)):
            raise InvalidDimensions(f"{label} must be an integer, got {v!r}")
        if v <= 0:
            raise InvalidDimensions(f"{label} must be positive, got {v}")


def as_array(matrix: MatrixLike, rows: int, cols: int) -> np.ndarray:
    """Validate a rows x cols matrix and return it as a float64 array."""

    check_dims(cols, rows)

    if isinstance(matrix, np.ndarray):
        arr = matrix
    else:
        if len(matrix) != rows:
            raise DimensionMismatch(f"expected {rows} rows, got {len(matrix)}")
        for i, row in enumerate(matrix):
            if len(row) != cols:
                raise DimensionMismatch(f"row {i} has {len(row)} columns, expected {cols}")
        arr = np.asarray(matrix)

    if arr.shape != (rows, cols):
        raise DimensionMismatch(f"expected a {rows}x{cols} matrix, got shape {arr.shape}")
    # Strings would otherwise be parsed by astype.
    if arr.dtype.kind not in "biuf":
        raise DimensionMismatch(f"matrix entries must be numbers, got dtype {arr.dtype}")
    return arr.astype(np.float64, copy=False)


def to_rows(arr: np.ndarray) -> Matrix:
    return [[float(v) for v in row] for row in np.asarray(arr)]


def zeros(rows: int, cols: int) -> Matrix:
    return [[0.0] * cols for _ in range(rows)]


def identity(n: int) -> Matrix:
    check_dims(n, n)
    out = zeros(n, n)
    for i in range(n):
        out[i][i] = 1.0
    return out


def random_matrix(rows: int, cols: int, rng: Optional[np.random.Generator] = None) -> Matrix:
    """Entries uniform in [0, 1000), rounded to two decimals."""

    check_dims(cols, rows)
    rng = rng if rng is not None else np.random.default_rng()
    return to_rows(np.round(rng.random((rows, cols)) * 1000.0, 2))


def format_matrix(matrix: Sequence[Sequence[float]], precision: int = 2) -> str:
    cells = [[f"{v:.{precision}f}" for v in row] for row in matrix]
    if not cells:
        return ""
    width = max(len(c) for row in cells for c in row) if any(cells) else 0
    return "\n".join(" ".join(c.rjust(width) for c in row) for row in cells)
