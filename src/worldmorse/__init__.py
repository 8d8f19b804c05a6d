import subprocess
from importlib.metadata import PackageNotFoundError, version


def _get_version() -> str:
    """Get version from git describe (includes dev tag), falling back to package metadata."""
    try:
        result = subprocess.run(
            ["git", "describe", "--tags"],
            capture_output=True,
            text=True,
            timeout=2,
        )
        if result.returncode == 0:
            tag = result.stdout.strip()
            if tag.startswith("v"):
                return tag[1:]
            return tag
    except (FileNotFoundError, subprocess.TimeoutExpired, OSError):
        pass
    try:
        return version("worldmorse")
    except PackageNotFoundError:
        return "0.0.0"


__version__ = _get_version()
