from __future__ import annotations

"""Scalar <-> texel encodings.

Two encodings exist, both carrying IEEE-754 binary32 values bit-exactly:

- native float: one ``R32_SFLOAT`` texel per scalar; the shader sees
  ``vec4(x, 0, 0, 1)``.
- packed bytes: one ``R8G8B8A8_UNORM`` texel per scalar holding the four bytes
  of the binary32 pattern, most significant first. The byte ladder
  ``[16777216, 65536, 256, 1]`` is applied to the bit pattern rather than to
  the value, so sign, exponent and fraction all survive.

Float64 inputs are rounded to binary32 on encode. GPUs may flush subnormals to
zero while shading; host-side encode/decode never does.
"""

from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np


# VkFormat enum values (core Vulkan 1.0).
VK_FORMAT_R8G8B8A8_UNORM = 37
VK_FORMAT_R32_SFLOAT = 100

BYTE_LADDER = (16777216, 65536, 256, 1)

Texel = Tuple[float, ...]


_FLOAT_GLSL = """
float unpack_value(vec4 texel) {
    return texel.r;
}

vec4 pack_value(float value) {
    return vec4(value, 0.0, 0.0, 1.0);
}
"""

_PACKED_GLSL = """
float unpack_value(vec4 texel) {
    uvec4 b = uvec4(round(texel * 255.0));
    return uintBitsToFloat((b.r << 24) | (b.g << 16) | (b.b << 8) | b.a);
}

vec4 pack_value(float value) {
    uint bits = floatBitsToUint(value);
    uvec4 b = uvec4(bits >> 24, (bits >> 16) & 0xFFu, (bits >> 8) & 0xFFu, bits & 0xFFu);
    return vec4(b) / 255.0;
}
"""


@dataclass(frozen=True)
class ValueCodec:
    """Base encoding; subclasses fix the texel layout."""

    name: str
    vk_format: int
    texel_bytes: int
    glsl: str

    # numpy dtype of one texel's worth of bytes, in upload order
    _dtype = np.dtype("<f4")

    def encode(self, value: float) -> Texel:
        raise NotImplementedError

    def decode(self, texel: Sequence[float]) -> float:
        raise NotImplementedError

    def encode_matrix(self, matrix: np.ndarray) -> bytes:
        """Row-major texel bytes for a 2-D array, ready for upload."""

        return np.ascontiguousarray(matrix, dtype=self._dtype).tobytes()

    def decode_texels(self, raw: bytes, width: int, height: int) -> np.ndarray:
        """Inverse of encode_matrix; returns a float64 (height, width) array."""

        count = int(width) * int(height)
        if len(raw) < count * self.texel_bytes:
            raise ValueError(
                f"texel data too short: {len(raw)} bytes for {width}x{height} {self.name} texels"
            )
        arr = np.frombuffer(raw, dtype=self._dtype, count=count)
        return arr.reshape(int(height), int(width)).astype(np.float64)


class FloatCodec(ValueCodec):
    def __init__(self) -> None:
        super().__init__(
            name="float",
            vk_format=VK_FORMAT_R32_SFLOAT,
            texel_bytes=4,
            glsl=_FLOAT_GLSL,
        )

    def encode(self, value: float) -> Texel:
        return (float(np.float32(value)), 0.0, 0.0, 1.0)

    def decode(self, texel: Sequence[float]) -> float:
        return float(np.float32(texel[0]))


class PackedCodec(ValueCodec):
    _dtype = np.dtype(">f4")

    def __init__(self) -> None:
        super().__init__(
            name="packed",
            vk_format=VK_FORMAT_R8G8B8A8_UNORM,
            texel_bytes=4,
            glsl=_PACKED_GLSL,
        )

    def encode(self, value: float) -> Texel:
        bits = int(np.float32(value).view(np.uint32))
        return tuple((bits // r) % 256 for r in BYTE_LADDER)

    def decode(self, texel: Sequence[float]) -> float:
        if len(texel) != 4:
            raise ValueError(f"packed texel needs 4 channels, got {len(texel)}")
        bits = 0
        for byte, r in zip(texel, BYTE_LADDER):
            b = int(byte)
            if not 0 <= b <= 255:
                raise ValueError(f"packed channel out of range: {byte!r}")
            bits += b * r
        return float(np.uint32(bits).view(np.float32))


FLOAT = FloatCodec()
PACKED = PackedCodec()

CODECS = {FLOAT.name: FLOAT, PACKED.name: PACKED}


def get_codec(name: str) -> ValueCodec:
    try:
        return CODECS[name]
    except KeyError:
        raise ValueError(f"Unknown encoding {name!r}; expected one of {sorted(CODECS)}") from None
