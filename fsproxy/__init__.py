"""
fsproxy - Sandboxed File Proxy

Exposes a confined directory tree over HTTP for reading, writing and
listing files.
"""

__version__ = "0.1.0"
