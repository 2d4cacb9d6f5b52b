"""Encrypted journal with semantic search and conversational retrieval."""
