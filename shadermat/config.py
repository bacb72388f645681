from __future__ import annotations

"""Environment driven settings."""

from dataclasses import dataclass
from functools import lru_cache
from typing import Mapping, Optional

import os


_ENCODINGS = ("auto", "float", "packed")
_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"", "0", "false", "no", "off"}


@dataclass(frozen=True)
class Settings:
    disable_gpu: bool = False
    encoding: str = "auto"
    glslc: str = "glslc"
    # None waits on the fence without a limit
    submit_timeout_ns: Optional[int] = None


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ValueError(f"{name} must be a boolean flag, got {raw!r}")


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from SHADERMAT_* environment variables."""

    env = os.environ if environ is None else environ

    disable_gpu = _parse_bool("SHADERMAT_DISABLE_GPU", env.get("SHADERMAT_DISABLE_GPU", ""))

    encoding = env.get("SHADERMAT_ENCODING", "auto").strip().lower() or "auto"
    if encoding not in _ENCODINGS:
        raise ValueError(f"SHADERMAT_ENCODING must be one of {_ENCODINGS}, got {encoding!r}")

    glslc = env.get("SHADERMAT_GLSLC", "").strip() or "glslc"

    raw_timeout = env.get("SHADERMAT_SUBMIT_TIMEOUT_NS", "").strip()
    timeout: Optional[int] = None
    if raw_timeout:
        try:
            timeout = int(raw_timeout)
        except ValueError as e:
            raise ValueError(
                f"SHADERMAT_SUBMIT_TIMEOUT_NS must be an integer, got {raw_timeout!r}"
            ) from e
        if timeout <= 0:
            raise ValueError("SHADERMAT_SUBMIT_TIMEOUT_NS must be positive")

    return Settings(
        disable_gpu=disable_gpu,
        encoding=encoding,
        glslc=glslc,
        submit_timeout_ns=timeout,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
