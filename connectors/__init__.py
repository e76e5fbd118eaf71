"""
connectors — OAuth2 token-endpoint adapters for external services.

Each provider (Discord, Slack, Gmail, Dropbox) is a subclass of
BaseConnector that knows how to run the refresh-token grant against its
vendor.  The registry exposes the ones that are enabled and configured.
"""
