"""Target directory clients."""
