"""Core infrastructure: logging and asyncio coordination primitives."""
