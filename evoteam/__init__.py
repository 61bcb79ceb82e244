"""evoteam — an evolving workforce of worker agents, governed by survival."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("evoteam")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
