from __future__ import annotations

"""Matrix multiply and scale, on the GPU when asked and able, else on the CPU.

Each operation is a `NumericKernel` singleton that compiles its shader on the
first `use_gpu=True` call. A kernel that cannot be built stays on the CPU for
the rest of the process (until `reset_kernels()`).
"""

from enum import Enum
from typing import Any, Dict, Optional, Tuple

import logging

import numpy as np

from .context import get_context
from .errors import DimensionMismatch
from .kernel import Kernel, KernelInput, make_kernel
from .matrix import Matrix, MatrixLike, as_array, check_dims, to_rows
from .uniforms import UniformType


logger = logging.getLogger(__name__)


# Loop bound baked into the multiply shader; longer shared dimensions run on the CPU.
MAX_SHARED_DIM = 2048

# binary32 unit roundoff
EPSILON = 2.0**-23


def tolerance(terms: int, magnitude: float = 1.0) -> float:
    """Expected GPU/CPU disagreement for a sum of `terms` products.

    `magnitude` is the sum of absolute values of those products.
    """

    return max(terms * 2.0 * EPSILON * magnitude, 1e-6)


class KernelState(Enum):
    UNCOMPILED = "uncompiled"
    COMPILING = "compiling"
    READY = "ready"
    FALLBACK = "fallback"


class NumericKernel:
    name = "kernel"
    body = ""
    inputs: Tuple[str, ...] = ()
    uniforms: Dict[str, UniformType] = {}

    def __init__(self, context: Any = None) -> None:
        self._context = context
        self._kernel: Optional[Kernel] = None
        self.state = KernelState.UNCOMPILED

    def reset(self) -> None:
        self._kernel = None
        self.state = KernelState.UNCOMPILED

    def gpu_kernel(self) -> Optional[Kernel]:
        """The compiled kernel, compiling it on first use; None means use the CPU."""

        if self.state is KernelState.FALLBACK:
            return None

        ctx = self._context if self._context is not None else get_context()
        if self.state is KernelState.READY and self._kernel is not None:
            if ctx is self._kernel.context and getattr(ctx, "alive", True):
                return self._kernel
            logger.debug("%s: context changed, recompiling", self.name)
            self.reset()

        self.state = KernelState.COMPILING
        try:
            kernel = make_kernel(self.body, self.inputs, self.uniforms, context=ctx) if ctx is not None else None
        except BaseException:
            self.state = KernelState.UNCOMPILED
            raise
        if kernel is None:
            self.state = KernelState.FALLBACK
            logger.warning("shadermat: %s kernel unavailable, using CPU fallback", self.name)
            return None

        self._kernel = kernel
        self.state = KernelState.READY
        return kernel


MULTIPLY_BODY = """
const int MAX_SHARED_DIM = %d;

void main() {
    float increment1 = 1.0 / float(width1);
    float increment2 = 1.0 / float(height2);
    float sum = 0.0;
    for (int k = 0; k < MAX_SHARED_DIM; k++) {
        if (k >= width1) {
            break;
        }
        float along = float(k) + 0.5;
        vec2 coord1 = vec2(along * increment1, vTextureCoord.t);
        vec2 coord2 = vec2(vTextureCoord.s, along * increment2);
        sum += fetch(mtx1, coord1) * fetch(mtx2, coord2);
    }
    emit(sum);
}
""" % MAX_SHARED_DIM


class MatrixMultiply(NumericKernel):
    name = "multiply"
    body = MULTIPLY_BODY
    inputs = ("mtx1", "mtx2")
    uniforms = {"width1": UniformType.INT, "height2": UniformType.INT}

    def __call__(
        self,
        a: MatrixLike,
        b: MatrixLike,
        width_a: int,
        height_a: int,
        width_b: int,
        height_b: int,
        use_gpu: bool = False,
    ) -> Matrix:
        check_dims(width_a, height_a)
        check_dims(width_b, height_b)
        if width_a != height_b:
            raise DimensionMismatch(
                f"cannot multiply {height_a}x{width_a} by {height_b}x{width_b}: "
                f"width of A ({width_a}) != height of B ({height_b})"
            )
        arr_a = as_array(a, height_a, width_a)
        arr_b = as_array(b, height_b, width_b)

        if use_gpu:
            if width_a > MAX_SHARED_DIM:
                logger.debug("multiply: shared dimension %d exceeds %d, using CPU", width_a, MAX_SHARED_DIM)
            else:
                kernel = self.gpu_kernel()
                if kernel is not None:
                    return kernel(
                        [
                            KernelInput("mtx1", arr_a, width_a, height_a),
                            KernelInput("mtx2", arr_b, width_b, height_b),
                        ],
                        {"width1": width_a, "height2": height_b},
                        width_b,
                        height_a,
                    )
        return cpu_multiply(arr_a, arr_b)


SCALE_BODY = """
void main() {
    emit(scaleFactor * fetch(mtx, vTextureCoord));
}
"""


class MatrixScale(NumericKernel):
    name = "scale"
    body = SCALE_BODY
    inputs = ("mtx",)
    uniforms = {"scaleFactor": UniformType.FLOAT}

    def __call__(self, a: MatrixLike, rows: int, cols: int, factor: float, use_gpu: bool = False) -> Matrix:
        check_dims(cols, rows)
        arr = as_array(a, rows, cols)
        factor = float(factor)

        if use_gpu:
            kernel = self.gpu_kernel()
            if kernel is not None:
                return kernel(
                    [KernelInput("mtx", arr, cols, rows)],
                    {"scaleFactor": factor},
                    cols,
                    rows,
                )
        return cpu_scale(arr, factor)


def cpu_multiply(a: np.ndarray, b: np.ndarray) -> Matrix:
    rows_a = a.tolist()
    rows_b = b.tolist()
    inner = len(rows_b)
    cols = len(rows_b[0]) if rows_b else 0
    out = []
    for row in rows_a:
        out_row = []
        for j in range(cols):
            total = 0.0
            for k in range(inner):
                total += row[k] * rows_b[k][j]
            out_row.append(total)
        out.append(out_row)
    return out


def cpu_scale(a: np.ndarray, factor: float) -> Matrix:
    return to_rows(np.asarray(a, dtype=np.float64) * factor)


_MULTIPLY = MatrixMultiply()
_SCALE = MatrixScale()


def multiply(
    a: MatrixLike,
    b: MatrixLike,
    width_a: int,
    height_a: int,
    width_b: int,
    height_b: int,
    use_gpu: bool = False,
) -> Matrix:
    """A (height_a x width_a) times B (height_b x width_b)."""

    return _MULTIPLY(a, b, width_a, height_a, width_b, height_b, use_gpu=use_gpu)


def scale(a: MatrixLike, rows: int, cols: int, factor: float, use_gpu: bool = False) -> Matrix:
    """factor * A, elementwise."""

    return _SCALE(a, rows, cols, factor, use_gpu=use_gpu)


def kernel_states() -> Dict[str, KernelState]:
    return {k.name: k.state for k in (_MULTIPLY, _SCALE)}


def reset_kernels() -> None:
    _MULTIPLY.reset()
    _SCALE.reset()
