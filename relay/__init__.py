"""
LLM Relay — routes generation requests across multiple LLM providers.
"""

__version__ = "0.1.0"
