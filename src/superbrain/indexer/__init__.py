"""
Indexer module - semantic search over local files.

Pipeline: watch -> parse -> chunk -> embed -> index -> search

- parser: Extension allow-list and text extraction (PDF, DOCX, markup, text)
- chunker: Overlapping token windows
- index: Sharded in-memory chunk index
- watcher: watchdog bridge with per-path debounce
- indexer: Scans, incremental reindex and search
"""
