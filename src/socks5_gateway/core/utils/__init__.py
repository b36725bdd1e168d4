"""Utility functions and helpers."""

from socks5_gateway.core.utils.utils import format_bytes, mask_secret

__all__ = ["format_bytes", "mask_secret"]
