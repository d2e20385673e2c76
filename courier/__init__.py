"""Outbound messaging pipeline and delivery-status reconciliation."""

from .__version__ import __version__

__all__ = ["__version__"]
