"""
Test Utilities
==============

Fakes and recorders shared across the unit and integration tests.
"""
