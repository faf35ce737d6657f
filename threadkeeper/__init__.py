"""THREADKEEPER: drives coding agents from pull-request and issue threads."""

from threadkeeper.identity import __codename__, __tagline__, __version__

__all__ = ["__codename__", "__tagline__", "__version__"]
