from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import struct
import threading

import numpy as np
import pytest

from shadermat import context, ops
from shadermat.codec import FLOAT, ValueCodec
from shadermat.errors import ConcurrentInvocation, FramebufferIncomplete, ShaderMatError
from shadermat.matrix import as_array, check_dims, to_rows
from shadermat.uniforms import UniformLayout


def assert_within_tolerance(got: Any, want: Any, terms: int, magnitude: Any) -> None:
    """Check every entry of got against want with ops.tolerance(terms, magnitude)."""

    got = np.asarray(got, dtype=np.float64)
    want = np.asarray(want, dtype=np.float64)
    assert got.shape == want.shape
    magnitude = np.broadcast_to(np.asarray(magnitude, dtype=np.float64), want.shape)
    for idx in np.ndindex(want.shape):
        bound = ops.tolerance(terms, float(magnitude[idx]))
        assert abs(got[idx] - want[idx]) <= bound, f"{idx}: {got[idx]!r} vs {want[idx]!r}, bound {bound!r}"


class FakeTexture:
    def __init__(self, data: np.ndarray) -> None:
        self.data = data
        self.height, self.width = data.shape
        self.released = False


class FakeTarget:
    def __init__(self, texture: FakeTexture) -> None:
        self.texture = texture
        self.width = texture.width
        self.height = texture.height


class FakeStore:
    """Texture store that keeps textures as binary32-rounded numpy arrays."""

    def __init__(self, codec: ValueCodec, fail_output: bool = False) -> None:
        self.codec = codec
        self.fail_output = fail_output
        self.created = 0
        self.detached = 0
        self._live: Dict[int, FakeTexture] = {}

    @property
    def live_count(self) -> int:
        return len(self._live)

    def _track(self, tex: FakeTexture) -> FakeTexture:
        self.created += 1
        self._live[id(tex)] = tex
        return tex

    def make_output_target(self, width: int, height: int) -> FakeTarget:
        check_dims(width, height)
        if self.fail_output:
            raise FramebufferIncomplete(f"{width}x{height} output not renderable")
        return FakeTarget(self._track(FakeTexture(np.zeros((height, width)))))

    def matrix_to_texture(self, matrix: Any, width: int, height: int) -> FakeTexture:
        arr = as_array(matrix, height, width)
        data = self.codec.decode_texels(self.codec.encode_matrix(arr), width, height)
        return self._track(FakeTexture(data))

    def texture_to_matrix(self, texture: FakeTexture, width: int, height: int) -> List[List[float]]:
        raw = self.codec.encode_matrix(texture.data)
        arr = self.codec.decode_texels(raw, texture.width, texture.height)
        return to_rows(arr[:height, :width])

    def release_texture(self, texture: Optional[FakeTexture]) -> None:
        if texture is None or texture.released:
            return
        texture.released = True
        self._live.pop(id(texture), None)

    def detach_output(self, target: Optional[FakeTarget]) -> None:
        if target is None:
            return
        self.detached += 1
        self.release_texture(target.texture)


class FakeProgram:
    """Evaluates the two built-in kernels in float32 numpy."""

    def __init__(self, layout: UniformLayout, fail_draw: bool = False, stall_draw: bool = False) -> None:
        self.layout = layout
        self.fail_draw = fail_draw
        self.stall_draw = stall_draw
        self.draws = 0

    def draw(self, ctx: Any, target: FakeTarget, textures: List[FakeTexture], push: bytes) -> None:
        self.draws += 1
        if self.fail_draw:
            raise ShaderMatError("device lost")
        if self.stall_draw:
            # Same outcome as a fence wait that gives up while the draw is still queued.
            ctx.alive = False
            raise ShaderMatError("GPU work did not complete: VkTimeout()")
        assert len(push) == self.layout.size
        if self.layout.samplers == ("mtx1", "mtx2"):
            (width1,) = struct.unpack_from("<i", push, self.layout.slot("width1").offset)
            (height2,) = struct.unpack_from("<i", push, self.layout.slot("height2").offset)
            a, b = (t.data.astype(np.float32) for t in textures)
            assert a.shape[1] == width1 and b.shape[0] == height2
            out = a @ b
        elif self.layout.samplers == ("mtx",):
            (factor,) = struct.unpack_from("<f", push, self.layout.slot("scaleFactor").offset)
            out = np.float32(factor) * textures[0].data.astype(np.float32)
        else:
            raise AssertionError(f"unexpected kernel inputs {self.layout.samplers}")
        assert out.shape == (target.height, target.width)
        target.texture.data = out.astype(np.float64)


class FakeContext:
    def __init__(
        self,
        codec: ValueCodec = FLOAT,
        compile_error: Optional[Exception] = None,
        fail_output: bool = False,
        fail_draw: bool = False,
        stall_draw: bool = False,
    ) -> None:
        self.alive = True
        self.codec = codec
        self.textures = FakeStore(codec, fail_output=fail_output)
        self.compile_error = compile_error
        self.fail_draw = fail_draw
        self.stall_draw = stall_draw
        self.compiled: List[str] = []
        self.programs: List[FakeProgram] = []
        self._lock = threading.Lock()

    def compile_program(self, source: str, layout: UniformLayout) -> FakeProgram:
        self.compiled.append(source)
        if self.compile_error is not None:
            raise self.compile_error
        program = FakeProgram(layout, fail_draw=self.fail_draw, stall_draw=self.stall_draw)
        self.programs.append(program)
        return program

    @contextmanager
    def exclusive(self) -> Iterator["FakeContext"]:
        if not self._lock.acquire(blocking=False):
            raise ConcurrentInvocation("GPU context is already running a kernel")
        try:
            yield self
        finally:
            self._lock.release()


@pytest.fixture(autouse=True)
def _fresh_kernels() -> Iterator[None]:
    ops.reset_kernels()
    yield
    ops.reset_kernels()


@pytest.fixture
def install_context() -> Iterator[Any]:
    """Install a context (or None) as the default; availability is re-checked afterwards."""

    def install(ctx: Any) -> Any:
        context.set_context(ctx)
        return ctx

    yield install
    context.set_context(None)
    context.reset_context()


@pytest.fixture
def fake_ctx(install_context: Any) -> FakeContext:
    return install_context(FakeContext())
