"""keyvend -- subscription key vending service for Outline-style VPN servers."""

__version__ = "1.0.0"
