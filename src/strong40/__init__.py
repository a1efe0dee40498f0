"""Strong40 - progression engine for strength training sessions."""

import importlib.metadata

try:
    __version__ = importlib.metadata.version("strong40")
except importlib.metadata.PackageNotFoundError:
    __version__ = "unknown"
