"""
Data Models
===========

Pydantic models for agent events and the derived state built from them.
"""
