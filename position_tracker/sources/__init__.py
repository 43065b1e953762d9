"""
Sources package for the position tracker.
This package contains the position and price source contracts, the
CoinGecko price client and the manual position source.
"""
