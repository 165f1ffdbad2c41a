"""
Command line tools for marketplace operations.
"""
