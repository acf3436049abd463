"""
Coinbook

A shared internal currency engine: per-user balances in named coins,
atomic transfers, charge requests, and per-coin role based governance.
"""

__version__ = "1.0.0"
