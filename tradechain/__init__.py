"""
Tradechain write coordinator: blockchain-backed trade documents and carbon emission records.
"""

__version__ = "0.1.0"
