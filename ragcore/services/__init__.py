"""
Core services: embedding cache, knowledge store, conversation memory,
retrieval, operation tracking and completion orchestration.
"""
