"""Two-way CalDAV calendar synchronization."""

__version__ = "1.0.0"
