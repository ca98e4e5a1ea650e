from pathlib import Path


def get_project_root() -> Path:
    """Get the project root directory.

    Walks up from the current working directory to find the project root,
    identified by a ``rollgate.yaml`` or ``pyproject.toml``.

    Returns:
        Path to the project root directory (the working directory if none is found)
    """
    current = Path.cwd().resolve()
    for parent in [current, *current.parents]:
        if (parent / "rollgate.yaml").exists() or (parent / "pyproject.toml").exists():
            return parent
    return current
