"""Server-side services behind the API routes."""
