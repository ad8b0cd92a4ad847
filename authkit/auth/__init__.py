"""
Authentication for the authkit server.

Design goals:
- One immutable AuthConfig, assembled from the environment at startup.
- Email/password always on; Google and GitHub social login when configured.
- Postgres-backed users, linked accounts and sessions.
"""
