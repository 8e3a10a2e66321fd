"""Ranked NFT holder ledgers kept in sync with the chain."""

__version__ = "0.1.0"
