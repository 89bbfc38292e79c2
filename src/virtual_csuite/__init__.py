"""virtual-csuite: concurrent multi-perspective AI analysis with synthesized reports."""

from importlib.metadata import PackageNotFoundError, version as _get_version

try:
    __version__ = _get_version("virtual-csuite")
except PackageNotFoundError:
    __version__ = "0.1.0"

__all__ = ["__version__"]
