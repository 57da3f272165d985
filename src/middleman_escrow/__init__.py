"""Middleman escrow core — trade lifecycle, escrow holds and middleman supervision."""

__version__ = "0.1.0"
