from __future__ import annotations

"""Exception types raised by shadermat.

Context and compile failures are absorbed by the numeric kernels, which fall
back to the CPU. Everything else reaches the caller.
"""


class ShaderMatError(RuntimeError):
    """Base class for every error raised by shadermat."""


class ContextUnavailable(ShaderMatError):
    """No usable Vulkan device (or GPU use disabled)."""


class ShaderCompileError(ShaderMatError):
    """glslc rejected a shader source."""

    def __init__(self, message: str, log: str = "") -> None:
        super().__init__(message if not log else f"{message}:\n{log}")
        self.log = log


class ShaderLinkError(ShaderMatError):
    """Pipeline creation failed for an already compiled shader."""


class FramebufferIncomplete(ShaderMatError):
    """The output target cannot be rendered to with the requested size/format."""


class DimensionMismatch(ShaderMatError, ValueError):
    """Matrix shapes disagree with each other or with their declared sizes."""


class InvalidDimensions(ShaderMatError, ValueError):
    """A width or height is not a positive integer."""


class UniformError(ShaderMatError, TypeError):
    """A uniform is missing, undeclared, or has the wrong shape."""


class ConcurrentInvocation(ShaderMatError):
    """A dispatch was started while another one holds the context."""
