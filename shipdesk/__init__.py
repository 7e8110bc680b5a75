"""Shipdesk: order shipping labels backed by Easyship."""

__version__ = "1.0.0"
