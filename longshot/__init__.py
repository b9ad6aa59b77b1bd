"""longshot — compounding-probability game economy and daily tournament settlement."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("longshot")
except PackageNotFoundError:
    __version__ = "0.0.0"
