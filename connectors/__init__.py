"""
connectors — OAuth credential lifecycle for wearable-data providers.

Provides:
  • PKCE authorization-URL generation with single-use CSRF state
  • Callback handling (code + verifier → tokens)
  • AES-256-GCM encryption of tokens at rest
  • Reactive and scheduled (proactive) token rotation
  • Revocation / disconnect
  • Per-user rate limiting and an append-only audit trail

Each provider (Google Fit, …) is a subclass of BaseConnector.
"""
