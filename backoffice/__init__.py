"""
Marketplace back-office service.
Inventory, orders and multi-marketplace listing integrations.
"""

__version__ = "0.1.0"
