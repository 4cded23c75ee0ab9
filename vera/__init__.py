"""
Vera ticketing core: tickets, dynamic pricing, resale and payment reconciliation
"""

__version__ = "1.0.0"
