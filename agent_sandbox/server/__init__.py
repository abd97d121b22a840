"""agent-sandbox API server."""
