"""
Core package for the position tracker.
This package contains the shared data models, configuration, the diagnostic
event channel and the persistence port.
"""
