"""
Athena graph service: a versioned property-graph store with pattern queries.
"""

__version__ = "0.1.0"
