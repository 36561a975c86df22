"""Node preparation agent: disk layout and process supervision."""

from nodeprep.__version__ import __version__

__all__ = ["__version__"]
