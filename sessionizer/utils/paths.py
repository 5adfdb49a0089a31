# ==============================================================================
# Path Utilities
# ==============================================================================
"""
Project path helpers.

Certificate paths in configuration may be absolute, home-relative (~/...)
or relative to the project root.
"""

from pathlib import Path


def get_project_root() -> Path:
    """
    Get the project root directory.

    The directory above the sessionizer package when it holds pyproject.toml
    (a source checkout), otherwise the current working directory.

    Returns:
        Path to the project root directory
    """
    current = Path(__file__).parent.parent.parent  # utils/paths.py -> sessionizer -> project
    if (current / "pyproject.toml").exists():
        return current

    return Path.cwd()


def resolve_path(value: str) -> Path:
    """
    Resolve a configured file path.

    Args:
        value: Path string from configuration

    Returns:
        Absolute path ("~" expanded, relative paths anchored at the project root)
    """
    path = Path(value.strip()).expanduser()
    if path.is_absolute():
        return path
    return get_project_root() / path
