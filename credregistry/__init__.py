"""Verifiable credential registry backed by a Merkle accumulator."""

__version__ = "0.1.0"
