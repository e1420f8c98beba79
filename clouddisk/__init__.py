"""
clouddisk - a small remote file store over a custom TCP protocol.

The server exposes a directory tree; the client uploads, downloads,
lists and batch-transfers files, and can move a single large file over
several parallel range connections.
"""

from .config import Config, TransferPolicy, load_config
from .client import DiskClient
from .server import DiskServer

__version__ = '0.1.0'

__all__ = [
    'Config',
    'TransferPolicy',
    'load_config',
    'DiskClient',
    'DiskServer',
]
