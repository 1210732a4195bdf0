"""Pytest configuration and shared fixtures.

This module defines:
- Test markers (unit, integration)
- Shared fixtures built on the port fakes in tests/fakes.py
- Platform-specific skip conditions
"""

import platform
import sys

import pytest
import structlog

from agent_loop.domain.value_objects import ContentBlock, ToolSpec
from tests.fakes import FakeToolTransport


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "unit: Fast unit tests with fake ports (no MLX, no network)",
    )
    config.addinivalue_line(
        "markers",
        "integration: Tests with a real MLX model (Apple Silicon only)",
    )


def is_apple_silicon() -> bool:
    """Check if running on Apple Silicon (M1/M2/M3/M4)."""
    if sys.platform != "darwin":
        return False
    return platform.machine() == "arm64"


@pytest.fixture(autouse=True)
def _reset_structlog() -> None:
    """Undo logging configuration done by earlier tests."""
    structlog.reset_defaults()


@pytest.fixture
def fake_tool_transport() -> FakeToolTransport:
    """Tool transport advertising a single ``read_file`` tool."""
    return FakeToolTransport(
        tools=[
            ToolSpec(
                name="read_file",
                description="Read a file",
                parameters={"type": "object", "properties": {"path": {"type": "string"}}},
            )
        ],
        results={"read_file": [ContentBlock(type="text", text="file contents")]},
    )
