"""sparkplug-eon - Sparkplug B edge-of-network node agent."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("sparkplug-eon")
except PackageNotFoundError:
    __version__ = "(local)"
