"""Event and wire fixtures for tests."""
