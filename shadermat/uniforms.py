from __future__ import annotations

"""Typed kernel uniforms and their push-constant layout.

Every uniform a kernel declares gets a fixed byte offset in a std430
push-constant block when the kernel is compiled. Values are type-tagged
(`UniformValue`) and packed little-endian in that block for each dispatch.
Matrices are given column-major (a sequence of columns, or a flat sequence).
"""

from collections import abc
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Tuple

import struct

import numpy as np

from .errors import UniformError


_INT32_MIN = -(2**31)
_INT32_MAX = 2**31 - 1


class UniformType(Enum):
    # glsl name, scalar kind, columns, rows, column stride, alignment
    BOOL = ("bool", "i", 1, 1, 4, 4)
    INT = ("int", "i", 1, 1, 4, 4)
    FLOAT = ("float", "f", 1, 1, 4, 4)
    VEC2 = ("vec2", "f", 1, 2, 8, 8)
    VEC3 = ("vec3", "f", 1, 3, 12, 16)
    VEC4 = ("vec4", "f", 1, 4, 16, 16)
    IVEC2 = ("ivec2", "i", 1, 2, 8, 8)
    IVEC3 = ("ivec3", "i", 1, 3, 12, 16)
    IVEC4 = ("ivec4", "i", 1, 4, 16, 16)
    MAT2 = ("mat2", "f", 2, 2, 8, 8)
    MAT3 = ("mat3", "f", 3, 3, 16, 16)
    MAT4 = ("mat4", "f", 4, 4, 16, 16)

    def __init__(self, glsl: str, kind: str, columns: int, rows: int, stride: int, align: int) -> None:
        self.glsl = glsl
        self.kind = kind
        self.columns = columns
        self.rows = rows
        self.stride = stride
        self.align = align

    @property
    def size(self) -> int:
        if self.columns == 1:
            return 4 * self.rows
        return self.stride * self.columns

    @property
    def components(self) -> int:
        return self.columns * self.rows

    @classmethod
    def parse(cls, tag: "UniformType | str") -> "UniformType":
        if isinstance(tag, UniformType):
            return tag
        for t in cls:
            if t.glsl == str(tag).strip():
                return t
        raise UniformError(f"Unknown uniform type {tag!r}")

    def normalize(self, value: Any) -> Tuple[Any, ...]:
        """Flatten and type-check a Python value into a tuple of scalars."""

        if self.columns == 1 and self.rows == 1:
            flat = [value]
        elif self.columns == 1:
            flat = _as_list(value, self.glsl)
            if len(flat) != self.rows:
                raise UniformError(f"{self.glsl} needs {self.rows} components, got {len(flat)}")
        else:
            flat = _flatten_square(value, self.columns, self.glsl)

        if self is UniformType.BOOL:
            return tuple(1 if _as_bool(v) else 0 for v in flat)
        if self.kind == "i":
            return tuple(_as_int(v, self.glsl) for v in flat)
        return tuple(_as_float(v, self.glsl) for v in flat)

    def pack_into(self, buf: bytearray, offset: int, scalars: Tuple[Any, ...]) -> None:
        fmt = "<i" if self.kind == "i" else "<f"
        if self.columns == 1:
            for i, v in enumerate(scalars):
                struct.pack_into(fmt, buf, offset + 4 * i, v)
            return
        for c in range(self.columns):
            base = offset + c * self.stride
            for r in range(self.rows):
                struct.pack_into(fmt, buf, base + 4 * r, scalars[c * self.rows + r])


def _as_list(value: Any, glsl: str) -> list:
    if isinstance(value, (str, bytes)):
        raise UniformError(f"{glsl} value must be a sequence of numbers, got {value!r}")
    try:
        return list(np.asarray(value).reshape(-1).tolist())
    except (TypeError, ValueError) as e:
        raise UniformError(f"{glsl} value must be a sequence of numbers, got {value!r}") from e


def _flatten_square(value: Any, n: int, glsl: str) -> list:
    try:
        arr = np.asarray(value, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise UniformError(f"{glsl} value must be numeric, got {value!r}") from e
    if arr.shape == (n, n):
        # outer index is the column
        return arr.reshape(-1).tolist()
    if arr.shape == (n * n,):
        return arr.tolist()
    raise UniformError(f"{glsl} needs a {n}x{n} column-major matrix, got shape {arr.shape}")


def _as_bool(v: Any) -> bool:
    if isinstance(v, (bool, np.bool_)):
        return bool(v)
    if isinstance(v, (int, np.integer)):
        return v != 0
    raise UniformError(f"bool uniform needs a bool or int, got {v!r}")


def _as_int(v: Any, glsl: str) -> int:
    if isinstance(v, (float, np.floating)) and float(v).is_integer():
        v = int(v)
    if not isinstance(v, (int, np.integer)):
        raise UniformError(f"{glsl} uniform needs integers, got {v!r}")
    v = int(v)
    if not _INT32_MIN <= v <= _INT32_MAX:
        raise UniformError(f"{glsl} component {v} does not fit in 32 bits")
    return v


def _as_float(v: Any, glsl: str) -> float:
    if isinstance(v, (bool, np.bool_)) or not isinstance(v, (int, float, np.integer, np.floating)):
        raise UniformError(f"{glsl} uniform needs numbers, got {v!r}")
    return float(v)


@dataclass(frozen=True)
class UniformValue:
    """A uniform value tagged with its GLSL type."""

    type: UniformType
    value: Tuple[Any, ...]

    @classmethod
    def of(cls, tag: "UniformType | str", value: Any) -> "UniformValue":
        t = UniformType.parse(tag)
        return cls(t, t.normalize(value))


def bool_(v: Any) -> UniformValue:
    return UniformValue.of(UniformType.BOOL, v)


def int_(v: Any) -> UniformValue:
    return UniformValue.of(UniformType.INT, v)


def float_(v: Any) -> UniformValue:
    return UniformValue.of(UniformType.FLOAT, v)


@dataclass(frozen=True)
class UniformSlot:
    name: str
    type: UniformType
    offset: int


@dataclass(frozen=True)
class UniformLayout:
    """Name -> location table for one kernel.

    Samplers map to descriptor bindings, uniforms to push-constant offsets.
    """

    samplers: Tuple[str, ...] = ()
    slots: Tuple[UniformSlot, ...] = ()
    size: int = 0
    _by_name: Dict[str, UniformSlot] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def build(
        cls,
        samplers: Iterable[str] = (),
        uniforms: "Mapping[str, UniformType | str] | Iterable[Tuple[str, UniformType | str]]" = (),
    ) -> "UniformLayout":
        sampler_names = tuple(samplers)
        items = list(uniforms.items()) if isinstance(uniforms, abc.Mapping) else list(uniforms)

        seen: set[str] = set()
        for name in list(sampler_names) + [n for n, _ in items]:
            if not name.isidentifier():
                raise UniformError(f"Invalid uniform name {name!r}")
            if name in seen:
                raise UniformError(f"Uniform {name!r} declared twice")
            seen.add(name)

        slots = []
        offset = 0
        for name, tag in items:
            t = UniformType.parse(tag)
            offset = _align(offset, t.align)
            slots.append(UniformSlot(name=name, type=t, offset=offset))
            offset += t.size
        size = _align(offset, 16) if offset else 0

        return cls(
            samplers=sampler_names,
            slots=tuple(slots),
            size=size,
            _by_name={s.name: s for s in slots},
        )

    def binding(self, sampler: str) -> int:
        try:
            return self.samplers.index(sampler)
        except ValueError:
            raise UniformError(f"Kernel has no input named {sampler!r}") from None

    def slot(self, name: str) -> UniformSlot:
        try:
            return self._by_name[name]
        except KeyError:
            raise UniformError(f"Kernel has no uniform named {name!r}") from None

    def pack(self, values: Mapping[str, Any]) -> bytes:
        """Pack a full set of uniform values into push-constant bytes."""

        unknown = sorted(set(values) - set(self._by_name))
        if unknown:
            raise UniformError(f"Undeclared uniforms: {', '.join(unknown)}")

        buf = bytearray(self.size)
        for s in self.slots:
            if s.name not in values:
                raise UniformError(f"Missing value for uniform {s.name!r}")
            v = values[s.name]
            if isinstance(v, UniformValue):
                if v.type is not s.type:
                    raise UniformError(
                        f"Uniform {s.name!r} declared {s.type.glsl}, got {v.type.glsl}"
                    )
                scalars = v.value
            else:
                scalars = s.type.normalize(v)
            s.type.pack_into(buf, s.offset, scalars)
        return bytes(buf)

    def glsl_declarations(self) -> str:
        """Sampler and push-constant declarations, with bare-name aliases."""

        lines = [
            f"layout(set = 0, binding = {i}) uniform sampler2D {name};"
            for i, name in enumerate(self.samplers)
        ]
        if self.slots:
            lines.append("layout(push_constant) uniform KernelParams {")
            for s in self.slots:
                lines.append(f"    layout(offset = {s.offset}) {s.type.glsl} u_{s.name};")
            lines.append("} params;")
            for s in self.slots:
                lines.append(f"#define {s.name} params.u_{s.name}")
        return "\n".join(lines) + "\n"


def _align(offset: int, alignment: int) -> int:
    return (offset + alignment - 1) // alignment * alignment
