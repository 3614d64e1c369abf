"""Version detection and startup logging."""

from __future__ import annotations

from pathlib import Path

from .logger import get_logger

logger = get_logger(__name__)

PACKAGE_NAME = "redblue-counter"


def get_version(package_name: str = PACKAGE_NAME) -> str:
    """Get the service version from package metadata or pyproject.toml.

    1. Installed package metadata (production)
    2. ``pyproject.toml`` at the repository root (development checkout)
    3. ``"0.0.0"`` if neither is available
    """
    try:
        from importlib.metadata import PackageNotFoundError, version as get_package_version

        return get_package_version(package_name)
    except PackageNotFoundError:
        pass

    import tomllib

    # python/redblue/version.py -> repository root
    pyproject_path = Path(__file__).resolve().parents[2] / "pyproject.toml"
    if pyproject_path.exists():
        try:
            with open(pyproject_path, "rb") as f:
                data = tomllib.load(f)
            project = data.get("project", {})
            if "version" in project:
                return str(project["version"])
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.debug("Could not read version from %s: %s", pyproject_path, e)

    logger.warning("Could not determine service version, using default '0.0.0'")
    return "0.0.0"


def log_startup(version: str | None = None) -> None:
    """Log the standard startup line."""
    if not version:
        version = get_version()
    logger.info("Starting Red vs Blue Counter Service v%s", version)
