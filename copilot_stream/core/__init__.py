"""
Core Client Logic
=================

Event classification and the utilities shared around the stream.

Modules:
- classifier: AgentEvent dispatch and derived state
- rate_limit: Rate limit tracking with reset countdown
- backoff: Backoff delays and the retry_with_backoff helper
- auth_headers: Authentication and context header builder
"""
