"""Management agent HTTP client and status report parsing."""
