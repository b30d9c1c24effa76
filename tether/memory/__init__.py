"""Conversation models, memory manager and persistence backends."""
