import shutil

import numpy as np
import pytest

from shadermat import shaders
from shadermat.codec import FLOAT, PACKED
from shadermat.errors import ShaderCompileError
from shadermat.ops import MULTIPLY_BODY, SCALE_BODY
from shadermat.shaders import (
    ATTRIBUTES,
    QUAD_STRIDE,
    QUAD_VERTEX_COUNT,
    QUAD_VERTICES,
    VERTEX_SHADER,
    compile_glsl,
    fragment_source,
)
from shadermat.uniforms import UniformLayout


HAS_GLSLC = shutil.which("glslc") is not None

MULTIPLY_LAYOUT = UniformLayout.build(["mtx1", "mtx2"], {"width1": "int", "height2": "int"})
SCALE_LAYOUT = UniformLayout.build(["mtx"], {"scaleFactor": "float"})


def test_quad_geometry() -> None:
    verts = QUAD_VERTICES.reshape(QUAD_VERTEX_COUNT, -1)

    assert verts.shape == (4, 5)
    assert QUAD_STRIDE == verts.shape[1] * verts.itemsize
    # corners cover clip space and map to the unit texture square
    np.testing.assert_array_equal(verts[:, 3:], (verts[:, :2] + 1.0) / 2.0)
    assert ATTRIBUTES == {"aVertexPosition": 0, "aTextureCoord": 1}
    assert "layout(location = 1) in vec2 aTextureCoord;" in VERTEX_SHADER


def test_fragment_source_layout() -> None:
    src = fragment_source(SCALE_BODY, SCALE_LAYOUT, FLOAT)

    assert src.startswith("#version 450\n")
    assert src.index("sampler2D mtx;") < src.index("float unpack_value") < src.index("float fetch(")
    assert src.rstrip().endswith("}")
    assert "#define scaleFactor params.u_scaleFactor" in src


def test_compile_rejects_unknown_stage() -> None:
    with pytest.raises(ValueError):
        compile_glsl("", "comp")


def test_missing_compiler_is_a_compile_error(tmp_path) -> None:
    with pytest.raises(ShaderCompileError, match="not found"):
        compile_glsl(VERTEX_SHADER, "vert", glslc=str(tmp_path / "no-such-glslc"))


def test_unrunnable_compiler_is_a_compile_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def refuse(*args, **kwargs):
        raise PermissionError(13, "Permission denied", "glslc")

    monkeypatch.setattr(shaders.subprocess, "run", refuse)

    with pytest.raises(ShaderCompileError, match="could not run glslc"):
        compile_glsl(VERTEX_SHADER, "vert")


@pytest.mark.skipif(not HAS_GLSLC, reason="glslc not installed")
@pytest.mark.parametrize("codec", [FLOAT, PACKED], ids=lambda c: c.name)
@pytest.mark.parametrize("body, layout", [(MULTIPLY_BODY, MULTIPLY_LAYOUT), (SCALE_BODY, SCALE_LAYOUT)])
def test_kernels_compile(codec, body, layout) -> None:
    spv = compile_glsl(fragment_source(body, layout, codec), "frag")

    assert len(spv) % 4 == 0
    assert spv[:4] == bytes([0x03, 0x02, 0x23, 0x07])


@pytest.mark.skipif(not HAS_GLSLC, reason="glslc not installed")
def test_syntax_error_carries_compiler_log() -> None:
    with pytest.raises(ShaderCompileError) as info:
        compile_glsl(fragment_source("void main() { emit(; }", SCALE_LAYOUT, FLOAT), "frag")

    assert info.value.log
