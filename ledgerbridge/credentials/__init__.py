"""
Credentials module for OAuth token lifecycle management.

This package provides:
- Encrypted storage for both providers' token pairs (store)
- Identifier normalization and loose tenant resolution (identifiers, resolver)
- Serialized token refresh, proactive and reactive (refresh, locks, providers)
- Provider calls with refresh-and-retry-once semantics (client)
- Audit logging with automatic redaction (redaction)

SECURITY:
- Tokens are encrypted at rest (AES-256-GCM, key derived from ENCRYPTION_KEY)
- Tokens NEVER appear in logs, reprs or API responses

Import submodules directly, e.g. ledgerbridge.credentials.store.
"""
