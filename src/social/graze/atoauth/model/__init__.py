"""
Data Models

This package defines the data structures used by the OAuth client engine.

Key Models:
- metadata.py: Pydantic models for discovery documents and client metadata
- state.py: SessionStateRecord, the state kept between redirect and callback
- tokens.py: TokenSet returned by a completed code exchange
- base.py / oauth.py: SQLAlchemy table backing the database state store
"""
