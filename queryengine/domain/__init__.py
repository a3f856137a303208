"""
Domain

Query definition handling and execution.
"""
