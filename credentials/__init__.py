"""
credentials — per-vendor OAuth credential lifecycle for MCP connectors.

  • CredentialCache — expiry-aware in-memory token cache
  • CredentialWatcher — background refresh of tokens about to expire
  • CacheSynchronizer — reconciliation of the cache with the database
  • CredentialService — owns all of the above for one vendor
"""
