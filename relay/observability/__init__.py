"""
Observability module for LLM Relay.

Structured logging with per-request correlation ids.
"""
