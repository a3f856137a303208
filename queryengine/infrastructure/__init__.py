"""
Infrastructure

Cache store and metrics collection.
"""
