"""Paysync: payment gateway webhook reconciliation."""

__version__ = "0.1.0"
