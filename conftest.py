"""Pytest configuration for the Data Lifecycle Toolkit."""

import pytest


def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line("markers", "scenario: end-to-end purge scenario")
    config.addinivalue_line("markers", "slow: exercises retry back-off or timeouts")


# Configure pytest to ignore certain warnings
pytest.mark.filterwarnings("ignore::pytest.PytestCollectionWarning")
