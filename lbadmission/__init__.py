"""Validating and mutating admission webhooks for load balancers, drivers and backend groups."""

__version__ = "0.1.0"

__all__ = ["__version__"]