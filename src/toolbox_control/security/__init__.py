"""Authentication for the control-plane API."""
