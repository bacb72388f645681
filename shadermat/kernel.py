from __future__ import annotations

"""Build fragment-shader kernels and run them over matrices.

`make_kernel` compiles a GLSL body once against a declared set of inputs
and uniforms. The returned `Kernel` is called with concrete matrices and
uniform values; every call renders one full-screen quad into a fresh output
attachment and reads the result back.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple, Union

import logging

from .context import get_context
from .errors import ShaderCompileError, ShaderLinkError, UniformError
from .matrix import Matrix, MatrixLike, as_array, check_dims
from .shaders import fragment_source
from .uniforms import UniformLayout, UniformType, UniformValue


logger = logging.getLogger(__name__)


@dataclass
class KernelInput:
    name: str
    matrix: MatrixLike
    width: int
    height: int

    @classmethod
    def coerce(cls, item: Any) -> "KernelInput":
        """Accept a KernelInput, a mapping with the same keys, or a 4-tuple."""

        if isinstance(item, KernelInput):
            return item
        if isinstance(item, Mapping):
            try:
                return cls(item["name"], item["matrix"], item["width"], item["height"])
            except KeyError as e:
                raise TypeError(f"kernel input is missing {e.args[0]!r}") from None
        if isinstance(item, (tuple, list)) and len(item) == 4:
            return cls(*item)
        raise TypeError(f"Unsupported kernel input: {item!r}")


UniformSpec = Union[Mapping[str, Union[UniformType, str]], Iterable[Tuple[str, Union[UniformType, str]]]]


class Kernel:
    """A compiled program bound to the context it was compiled on."""

    def __init__(self, context: Any, program: Any, layout: UniformLayout) -> None:
        self.context = context
        self.program = program
        self.layout = layout

    @property
    def inputs(self) -> Tuple[str, ...]:
        return self.layout.samplers

    def __call__(
        self,
        inputs: Sequence[Any],
        uniforms: Optional[Mapping[str, Any]] = None,
        output_width: int = 0,
        output_height: int = 0,
    ) -> Matrix:
        check_dims(output_width, output_height)

        items = [KernelInput.coerce(i) for i in inputs]
        names = [i.name for i in items]
        if len(set(names)) != len(names):
            raise UniformError(f"Duplicate kernel inputs: {names}")
        missing = [n for n in self.layout.samplers if n not in names]
        extra = [n for n in names if n not in self.layout.samplers]
        if missing or extra:
            raise UniformError(
                f"Kernel expects inputs {list(self.layout.samplers)}, got {names}"
            )
        arrays = {i.name: as_array(i.matrix, i.height, i.width) for i in items}
        by_name = {i.name: i for i in items}

        push = self.layout.pack(_tagged(uniforms or {}))

        ctx = self.context
        logger.debug(
            "dispatch %dx%d output, inputs=%s, %d push-constant bytes",
            output_width,
            output_height,
            names,
            len(push),
        )
        with ctx.exclusive():
            store = ctx.textures
            target = None
            textures: Dict[str, Any] = {}
            try:
                target = store.make_output_target(output_width, output_height)
                for name in self.layout.samplers:
                    item = by_name[name]
                    textures[name] = store.matrix_to_texture(arrays[name], item.width, item.height)
                bound = [textures[name] for name in self.layout.samplers]
                self.program.draw(ctx, target, bound, push)
                return store.texture_to_matrix(target.texture, output_width, output_height)
            finally:
                if getattr(ctx, "alive", True):
                    for tex in textures.values():
                        store.release_texture(tex)
                    store.detach_output(target)
                else:
                    # Work may still be in flight; leave its images to context teardown.
                    logger.warning(
                        "shadermat: context lost mid-dispatch, %d textures left allocated",
                        len(textures) + (target is not None),
                    )


def _tagged(values: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for name, v in values.items():
        if isinstance(v, Mapping) and set(v) == {"type", "value"}:
            v = UniformValue.of(v["type"], v["value"])
        out[name] = v
    return out


def make_kernel(
    body: str,
    inputs: Sequence[str],
    uniforms: Optional[UniformSpec] = None,
    context: Any = None,
) -> Optional[Kernel]:
    """Compile body into a Kernel, or return None if it cannot run on the GPU."""

    ctx = context if context is not None else get_context()
    if ctx is None or not getattr(ctx, "alive", True):
        logger.debug("no usable GPU context; kernel not compiled")
        return None

    layout = UniformLayout.build(inputs, uniforms or ())
    source = fragment_source(body, layout, ctx.codec)
    try:
        program = ctx.compile_program(source, layout)
    except ShaderCompileError as e:
        logger.warning("shadermat: kernel failed to compile: %s", e)
        if e.log:
            logger.debug("glslc output:\n%s", e.log)
        return None
    except ShaderLinkError as e:
        logger.warning("shadermat: kernel failed to link: %s", e)
        return None
    return Kernel(ctx, program, layout)
