"""Repolens: repository indexing and code retrieval for question answering."""

__version__ = "0.1.0"
