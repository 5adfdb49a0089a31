# ==============================================================================
# Version Utilities
# ==============================================================================
"""
Utilities for retrieving package versions.
"""

from importlib.metadata import PackageNotFoundError, version


def get_sessionizer_version() -> str:
    """Get the sessionizer package version."""
    try:
        return version("sessionizer")
    except PackageNotFoundError:
        return "0.1.0"


def get_package_version(package_name: str) -> str:
    """
    Get the version of an installed package.

    Args:
        package_name: Distribution name (e.g., "kafka-python", "psycopg2-binary")

    Returns:
        Version string or "unknown" if not found
    """
    try:
        return version(package_name)
    except PackageNotFoundError:
        return "unknown"
