"""Mock tag store backend for local development and integration tests."""
