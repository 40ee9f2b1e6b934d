"""dbmanager HTTP API."""
