"""
ORTHRUS - Two-Factor Authentication Gate

The second head of the login flow.

This package provides the enforcement layer that runs after a password has
been accepted and before a session is established: second-factor policy,
e-mail / authenticator / backup code verification, trusted devices,
lockout, and the FastAPI surface that drives them.
"""

__version__ = "0.1.0"
__author__ = "ORTHRUS Team"
