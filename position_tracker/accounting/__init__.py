"""
Accounting package for the position tracker.
This package contains the cost-basis ledger, the snapshot store and the
performance tracker.
"""
