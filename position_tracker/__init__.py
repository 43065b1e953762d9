"""
DeFi Position Tracker.
Aggregates a wallet's positions across unreliable protocol sources and
keeps cost-basis and performance accounting for them.
"""

__version__ = "0.1.0"
