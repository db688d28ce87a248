"""
SuperBrain - local cognitive layer with memory, learning and file search.

Package structure:
- core: Config, logging, errors, shared types, events, scheduling
- brain: Embeddings, vector memory, Q-learning, persistence, cognitive engine
- ai: Completion provider abstraction (local Ollama, cloud Claude)
- indexer: File parsing, chunking, watching and semantic file search
- context: Single context object wiring everything together
- workflows: Summaries, learning digest and search-and-remember built on the context
"""

__version__ = "0.1.0"
