"""Bulk watermarking of product catalog images, with rollback."""

__version__ = "0.1.0"
