"""
Session State Stores

Short-lived, single-use storage for `SessionStateRecord`s between the
authorization redirect and the callback.

Key Components:
- state.py: The StateStore contract and the in-memory implementation
- redis.py: Redis-backed store using SET NX and GETDEL
- database.py: SQLAlchemy-backed store using DELETE ... RETURNING

Every backend guarantees that `take_once` hands a record to at most one
caller, and that records older than the configured lifetime are treated as
absent.
"""
