"""
Core configuration, logging, container and engine.
"""
