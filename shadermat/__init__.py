from importlib.metadata import PackageNotFoundError, version

from .errors import (
	ShaderMatError,
	ContextUnavailable,
	ShaderCompileError,
	ShaderLinkError,
	FramebufferIncomplete,
	DimensionMismatch,
	InvalidDimensions,
	UniformError,
	ConcurrentInvocation,
)
from .context import GPUContext, get_context, set_context, reset_context, gpu_available
from .kernel import Kernel, KernelInput, make_kernel
from .ops import MatrixMultiply, MatrixScale, multiply, scale, reset_kernels
from .uniforms import UniformType, UniformValue

try:
	__version__ = version("shadermat")
except PackageNotFoundError:  # pragma: no cover
	__version__ = "0.1.0"

__all__ = [
	"multiply",
	"scale",
	"MatrixMultiply",
	"MatrixScale",
	"reset_kernels",
	"make_kernel",
	"Kernel",
	"KernelInput",
	"UniformType",
	"UniformValue",
	"GPUContext",
	"get_context",
	"set_context",
	"reset_context",
	"gpu_available",
	"ShaderMatError",
	"ContextUnavailable",
	"ShaderCompileError",
	"ShaderLinkError",
	"FramebufferIncomplete",
	"DimensionMismatch",
	"InvalidDimensions",
	"UniformError",
	"ConcurrentInvocation",
	"__version__",
]
