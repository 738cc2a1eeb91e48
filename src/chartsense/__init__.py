"""
Chartsense
==========

Advisory service that watches a captured chart stream, extracts
market-microstructure features from pixel color and geometry, and asks
an AI oracle to confirm trade directions. It never places orders.

Usage:
    python -m chartsense
"""

__version__ = "0.1.0"
__schema_version__ = "1.0"
