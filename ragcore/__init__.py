"""
RAGCore: retrieval and conversation memory for LLM applications.
"""

__version__ = "0.1.0"
