"""Pytest configuration for GxP Case Workflow."""


def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line("markers", "gxp: mark test as GxP compliance test")
