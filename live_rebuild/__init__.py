"""Development-mode build orchestrator.

This package watches a source tree, runs a compile + bundle pipeline one build
at a time, and tells connected browsers to reload after each successful build.
"""

__version__ = "0.1.0"
