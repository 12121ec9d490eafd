"""
Shared utilities for ORTHRUS.

This package provides:
- Secrets management
- Secret masking for logs
"""
from .secrets import get_secret, mask_secret

__all__ = ["get_secret", "mask_secret"]
