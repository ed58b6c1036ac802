"""
featurekit - feature flag and experiment evaluation service.
"""

__version__ = "0.1.0"
