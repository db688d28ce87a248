"""Token-window chunking.

Tokens are whitespace-separated words. Windows of chunk_size tokens advance
by chunk_size - overlap; the last window always reaches the end of the text,
so a text of L > C tokens yields ceil((L - O) / (C - O)) chunks.
"""

DEFAULT_CHUNK_SIZE = 512
DEFAULT_OVERLAP = 128


def chunk_text(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_OVERLAP,
) -> list[str]:
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if not 0 <= overlap < chunk_size:
        raise ValueError("overlap must be in [0, chunk_size)")

    tokens = text.split()
    if not tokens:
        return []

    step = chunk_size - overlap
    chunks = []
    start = 0
    while True:
        end = min(start + chunk_size, len(tokens))
        chunks.append(" ".join(tokens[start:end]))
        if end >= len(tokens):
            break
        start += step
    return chunks


def expected_chunks(token_count: int, chunk_size: int = DEFAULT_CHUNK_SIZE, overlap: int = DEFAULT_OVERLAP) -> int:
    """Number of chunks chunk_text produces for token_count tokens."""
    if token_count <= 0:
        return 0
    if token_count <= chunk_size:
        return 1
    step = chunk_size - overlap
    return -(-(token_count - overlap) // step)
