"""Instrumented user, product and order services over a shared MongoDB."""

__version__ = "1.0.0"
