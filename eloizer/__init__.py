"""ELOIZER — static security analyzer for Solana / Anchor programs."""

__version__ = "0.3.0"
