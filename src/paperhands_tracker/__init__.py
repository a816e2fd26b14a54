"""Paperhands Tracker - Solana sell-regret analysis with bounded-concurrency scheduling."""

__version__ = "0.1.0"
