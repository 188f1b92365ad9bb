"""tasklattice - file-backed task tracking with a derived dependency graph."""

__version__ = "0.1.0"
