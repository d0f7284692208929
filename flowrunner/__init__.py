"""Flowrunner - typed node-graph flow execution engine.

Loads persisted flows, migrates node data, validates handle wiring and
runs the graph with branch, loop and termination semantics.
"""

__version__ = "0.1.0"
