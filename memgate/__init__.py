"""
memgate - LLM Provider Gateway with Long-Term Memory

This package proxies chat requests between the OpenAI, Anthropic and Google
Gemini APIs through one canonical shape, and augments prompts with memories
retrieved by embedding similarity.
"""

__version__ = "1.0.0"
