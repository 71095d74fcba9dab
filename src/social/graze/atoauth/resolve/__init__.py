"""
Identity Resolution

This package provides utilities for resolving AT Protocol identifiers (DIDs, handles)
to the DID document and Personal Data Server (PDS) that back them.

Key Components:
- handle.py: Input parsing, handle resolution and DID resolution
- dns.py: Pluggable DNS TXT lookups (DNS-over-HTTPS and aiodns)
- cache.py: Time-bounded caching with in-flight request sharing
- __main__.py: CLI interface for resolution

Resolution Types:
1. Handle Resolution
   - DNS-based resolution via TXT records (_atproto.{handle})
   - HTTP-based resolution via well-known endpoints (.well-known/atproto-did)

2. DID Resolution
   - did:plc method resolution via PLC directory
   - did:web method resolution via well-known endpoints

A handle is only accepted when the DID document it points at lists the same
handle back in alsoKnownAs.
"""
