import pytest

from shadermat import context
from shadermat.config import Settings, get_settings, load_settings


def test_defaults() -> None:
    s = load_settings({})

    assert s == Settings()
    assert s.disable_gpu is False
    assert s.encoding == "auto"
    assert s.glslc == "glslc"
    assert s.submit_timeout_ns is None


def test_environment_overrides() -> None:
    s = load_settings(
        {
            "SHADERMAT_DISABLE_GPU": "Yes",
            "SHADERMAT_ENCODING": " Packed ",
            "SHADERMAT_GLSLC": "/opt/vulkan/bin/glslc",
            "SHADERMAT_SUBMIT_TIMEOUT_NS": "2500000000",
        }
    )

    assert s.disable_gpu is True
    assert s.encoding == "packed"
    assert s.glslc == "/opt/vulkan/bin/glslc"
    assert s.submit_timeout_ns == 2_500_000_000


@pytest.mark.parametrize(
    "env",
    [
        {"SHADERMAT_DISABLE_GPU": "maybe"},
        {"SHADERMAT_ENCODING": "half"},
        {"SHADERMAT_SUBMIT_TIMEOUT_NS": "soon"},
        {"SHADERMAT_SUBMIT_TIMEOUT_NS": "0"},
    ],
)
def test_invalid_values(env) -> None:
    with pytest.raises(ValueError):
        load_settings(env)


def test_disable_gpu_makes_context_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SHADERMAT_DISABLE_GPU", "1")
    get_settings.cache_clear()
    context.reset_context()
    try:
        assert context.get_context() is None
        assert context.gpu_available() is False
        with pytest.raises(context.ContextUnavailable, match="SHADERMAT_DISABLE_GPU"):
            context.require_context()
    finally:
        monkeypatch.delenv("SHADERMAT_DISABLE_GPU")
        get_settings.cache_clear()
        context.reset_context()
