"""Pytest configuration and shared fixtures."""

import pytest

# The dingzsync testing plugin is registered via a ``pytest11`` entry
# point (pyproject.toml) for external consumers.  In our own test
# suite we disable it (``-p no:dingzsync``) and load it here instead,
# so that the dingzsync import chain is measured by pytest-cov.
pytest_plugins = ["dingzsync.testing._plugin"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (bridge wired to fake devices)"
    )
