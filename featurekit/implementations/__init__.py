"""
Backend implementations for the core interfaces.
"""
