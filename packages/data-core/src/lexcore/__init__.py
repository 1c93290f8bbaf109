"""lexcore — multi-tenant data-access, caching and key-rotation core."""

__version__ = "0.1.0"
