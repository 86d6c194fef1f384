"""Runbooks that turn Jetson boards into Kubernetes nodes."""

__all__ = ["__version__"]

__version__ = "0.1.0"
