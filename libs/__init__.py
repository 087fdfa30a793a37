"""Groundgate shared libraries.

This package contains reusable components:
- common: Settings and logging configuration
- caching: Redis client, semantic response cache, decision stores
- memory: Per-user memory coordinator
"""
