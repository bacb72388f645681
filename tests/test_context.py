import pytest

from shadermat import context
from shadermat.config import Settings
from shadermat.errors import ContextUnavailable


def test_installed_context_is_returned(fake_ctx) -> None:
    assert context.get_context() is fake_ctx
    assert context.require_context() is fake_ctx
    assert context.gpu_available() is True


def test_cleared_context_is_unavailable(install_context) -> None:
    install_context(None)

    assert context.get_context() is None
    with pytest.raises(ContextUnavailable, match="cleared"):
        context.require_context()


def test_availability_is_remembered() -> None:
    context.reset_context()
    try:
        first = context.get_context()
        assert context.get_context() is first
    finally:
        context.reset_context()


def test_fence_wait_is_unbounded_unless_configured() -> None:
    assert context.fence_timeout(Settings()) == 2**64 - 1
    assert context.fence_timeout(Settings(submit_timeout_ns=5_000)) == 5_000
