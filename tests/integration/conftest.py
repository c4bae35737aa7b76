"""Configuration for integration tests."""

import pytest


def pytest_configure(config):
    """Add integration markers."""
    config.addinivalue_line(
        "markers", "integration: end-to-end scenarios against a fake backend"
    )
    config.addinivalue_line(
        "markers", "ci_safe: integration tests that stub every external call"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless explicitly requested.

    Tests marked with 'ci_safe' are always run because they stub all
    external calls and are safe for CI.
    """
    if not config.getoption("--integration", default=False):
        skip_integration = pytest.mark.skip(reason="Need --integration option to run")
        for item in items:
            if "integration" in item.keywords and "ci_safe" not in item.keywords:
                item.add_marker(skip_integration)
