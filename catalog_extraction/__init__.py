"""Vision-model attribute extraction service for product images."""

__version__ = "0.1.0"
