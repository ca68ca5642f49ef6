"""Lockchain: unlock orchestration for encrypted ZFS datasets."""

__version__ = "0.1.0"
