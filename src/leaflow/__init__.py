"""LEAFLOW: authenticating gateway in front of an internal inference service."""

__version__ = "0.2.0"

__all__ = ["__version__"]
