"""
Brain module - memory, learning and reasoning.

Components:
- embeddings: Deterministic hash embeddings with optional Ollama
- store: Lock-striped vector map
- memory: Memory store with recall, links, eviction, consolidation and delta flush
- learning: Q-learning strategy selector with prioritized replay
- persistence: SQLite storage
- cognitive: think / remember / recall / evolve / cycle, goals and beliefs
"""
