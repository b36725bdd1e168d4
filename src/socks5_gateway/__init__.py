"""Authenticating HTTP gateway relaying traffic through upstream SOCKS5 proxies."""

import pathlib
import tomllib


def get_version() -> str:
    """Read version from pyproject.toml."""
    current_dir = pathlib.Path(__file__).parent
    for parent in [current_dir] + list(current_dir.parents):
        pyproject_path = parent / "pyproject.toml"
        if pyproject_path.exists():
            with pyproject_path.open("rb") as f:
                pyproject_data = tomllib.load(f)
            project = pyproject_data.get("project", {})
            if project.get("name") == "socks5-gateway":
                return project["version"]

    # Fallback version if file not found
    return "0.0.0"


__version__ = get_version()
