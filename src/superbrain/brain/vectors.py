"""Vector helpers shared by the stores and the embedder."""

import numpy as np


def normalize(vector: np.ndarray) -> np.ndarray:
    """L2-normalise; the zero vector stays zero."""
    vec = np.asarray(vector, dtype=np.float32)
    norm = float(np.linalg.norm(vec))
    if norm == 0.0:
        return vec.copy()
    return (vec / norm).astype(np.float32)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either side is a zero vector."""
    a = np.asarray(a, dtype=np.float32)
    b = np.asarray(b, dtype=np.float32)
    if a.shape != b.shape:
        raise ValueError(f"Dimension mismatch: {a.shape} vs {b.shape}")
    norm = float(np.linalg.norm(a)) * float(np.linalg.norm(b))
    if norm == 0.0:
        return 0.0
    sim = float(np.dot(a, b)) / norm
    return max(-1.0, min(1.0, sim))


def cosine_scores(matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine similarity of every row of matrix against query."""
    query = np.asarray(query, dtype=np.float32)
    query_norm = float(np.linalg.norm(query))
    if query_norm == 0.0 or matrix.size == 0:
        return np.zeros(len(matrix), dtype=np.float32)
    row_norms = np.linalg.norm(matrix, axis=1)
    denom = row_norms * query_norm
    scores = np.divide(
        matrix @ query,
        denom,
        out=np.zeros(len(matrix), dtype=np.float32),
        where=denom > 0,
    )
    return np.clip(scores, -1.0, 1.0)


def to_bytes(vector: np.ndarray) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def from_bytes(data: bytes) -> np.ndarray:
    return np.frombuffer(data, dtype=np.float32).copy()
