"""Family event discovery, approval and free-event registration pipeline."""

__version__ = "0.1.0"
