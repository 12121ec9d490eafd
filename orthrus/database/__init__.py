"""
Database connection managers for ORTHRUS.

This package provides:
- auth_db: accounts, sessions, eligibility and security events
- profile_db: per-user 2FA profiles (method, secret, backup codes, devices)
- engine: shared SQLAlchemy engine construction
"""
