"""
Configuration Management
=======================

Environment-based configuration using Pydantic Settings.

Components:
- settings: Client settings and environment configuration
- logging: Structured logging configuration
"""
