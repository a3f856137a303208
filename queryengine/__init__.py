"""
Unified Query Execution Engine

Runs declarative query definitions against a relational store, a directory
service, an identity graph API or a reporting API, behind one safe pipeline:
validate, cache lookup, parameter processing, dispatch, result shaping,
cache write-through and metrics.
"""

__version__ = "1.0.0"
