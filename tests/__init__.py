"""Test suite for the copilot_stream client."""
