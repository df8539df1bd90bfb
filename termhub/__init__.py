"""termhub: multi-tenant pseudo-terminal session manager for interactive CLIs."""

__version__ = "0.1.0"
