"""Escrow, payout and reconciliation settlement service for the marketplace."""

__version__ = "1.0.0"
