"""Perfwatch: scheduled web-performance measurement and regression detection."""

__version__ = "1.0.0"
