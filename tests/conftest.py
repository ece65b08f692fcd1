"""Pytest configuration and shared fixtures."""

import pytest

# The deckhand testing plugin is registered via a ``pytest11`` entry
# point (pyproject.toml) for external consumers.  Our own suite disables
# it (``-p no:deckhand``) and loads it here instead, so the import chain
# runs after ``pytest-cov`` has started tracing.
pytest_plugins = ["deckhand.testing._plugin"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (full service on a loopback transport)"
    )
