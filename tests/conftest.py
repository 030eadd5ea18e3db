"""Shared pytest fixtures for xr-buildkit tests."""

from __future__ import annotations

import pytest

from xr_buildkit.config import BuildKitSettings


@pytest.fixture
def settings():
    """Settings with short timeouts and the native worker disabled."""
    return BuildKitSettings(
        sandbox_poll_interval=0.01,
        sandbox_init_timeout=0.1,
        build_timeout=0.2,
        source_timeout=0.1,
        native_enabled=False,
        worker_startup_timeout=1.0,
        worker_request_timeout=1.0,
    )
