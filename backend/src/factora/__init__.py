"""
Factora - invoice financing backend.

Tracks an invoice from MSME registration through buyer acknowledgement,
marketplace listing and investor purchase, keeping the relational store
and the XRP Ledger in agreement.
"""

__version__ = "0.1.0"
