from __future__ import annotations

"""GLSL sources shared by every kernel and the glslc driver.

Every kernel draws the same full-screen quad: four vertices in a triangle
strip, each carrying a vec3 position (location 0) and a vec2 texture
coordinate (location 1). Kernel bodies only supply the fragment stage.
"""

from pathlib import Path
from typing import TYPE_CHECKING

import subprocess
import tempfile

import numpy as np

from .errors import ShaderCompileError

if TYPE_CHECKING:  # pragma: no cover
    from .codec import ValueCodec
    from .uniforms import UniformLayout


POSITION_LOCATION = 0
TEXCOORD_LOCATION = 1

ATTRIBUTES = {
    "aVertexPosition": POSITION_LOCATION,
    "aTextureCoord": TEXCOORD_LOCATION,
}

# x, y, z, s, t
QUAD_VERTICES = np.array(
    [
        -1.0, -1.0, 0.0, 0.0, 0.0,
        1.0, -1.0, 0.0, 1.0, 0.0,
        -1.0, 1.0, 0.0, 0.0, 1.0,
        1.0, 1.0, 0.0, 1.0, 1.0,
    ],
    dtype=np.float32,
)
QUAD_VERTEX_COUNT = 4
QUAD_STRIDE = 5 * 4


VERTEX_SHADER = """#version 450
layout(location = 0) in vec3 aVertexPosition;
layout(location = 1) in vec2 aTextureCoord;
layout(location = 0) out vec2 vTextureCoord;

void main() {
    gl_Position = vec4(aVertexPosition, 1.0);
    vTextureCoord = aTextureCoord;
}
"""

_FRAGMENT_HEADER = """#version 450
layout(location = 0) in vec2 vTextureCoord;
layout(location = 0) out vec4 fragColor;
"""

_FRAGMENT_HELPERS = """
float fetch(sampler2D source, vec2 coord) {
    return unpack_value(texture(source, coord));
}

void emit(float value) {
    fragColor = pack_value(value);
}
"""


def fragment_source(body: str, layout: "UniformLayout", codec: "ValueCodec") -> str:
    """Wrap a kernel body with declarations and the codec helpers."""

    return "".join(
        [
            _FRAGMENT_HEADER,
            layout.glsl_declarations(),
            codec.glsl,
            _FRAGMENT_HELPERS,
            "\n",
            body.strip(),
            "\n",
        ]
    )


def compile_glsl(source: str, stage: str, glslc: str = "glslc") -> bytes:
    """Compile GLSL source to SPIR-V with glslc."""

    if stage not in ("vert", "frag"):
        raise ValueError(f"Unsupported shader stage: {stage}")

    with tempfile.TemporaryDirectory(prefix="shadermat-") as tmp:
        src_path = Path(tmp) / f"kernel.{stage}"
        spv_path = Path(tmp) / f"kernel.{stage}.spv"
        src_path.write_text(source, encoding="utf-8")
        try:
            subprocess.run(
                [glslc, str(src_path), "-o", str(spv_path)],
                check=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ShaderCompileError(f"{glslc} not found; install shader compiler tools") from e
        except OSError as e:
            raise ShaderCompileError(f"could not run {glslc}: {e}") from e
        except subprocess.CalledProcessError as e:
            raise ShaderCompileError(
                f"Failed compiling {stage} shader",
                e.stderr.decode("utf-8", errors="replace"),
            ) from e

        spv = spv_path.read_bytes()

    if len(spv) % 4 != 0:
        raise ShaderCompileError("SPIR-V bytecode length must be multiple of 4")
    return spv
