# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Hash-based text similarity: signed hashing vectors + cosine.

Approximates a bag-of-words embedding without a model:
  1. Tokenize (lowercase, strip punctuation, drop tokens < 3 chars)
  2. Hash each token with 32-bit FNV-1a
  3. Accumulate +1/-1 at index hash % dim (sign from the low bit)
  4. Compare vectors with cosine similarity
"""
import math
import re
from typing import List

DEFAULT_DIM = 512

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193

# Letters, digits, Cyrillic, whitespace and hyphen survive
_STRIP_RE = re.compile(r"[^a-z0-9а-яё\s-]", re.IGNORECASE)


def tokenize(text: str) -> List[str]:
    """Split text into lowercase tokens of 3+ chars."""
    cleaned = _STRIP_RE.sub(" ", text.lower())
    return [t for t in cleaned.split() if len(t) >= 3]


def fnv1a32(text: str) -> int:
    """32-bit FNV-1a over UTF-16 code units. Returns an unsigned int."""
    data = text.encode("utf-16-le")
    h = _FNV_OFFSET
    for i in range(0, len(data), 2):
        h ^= data[i] | (data[i + 1] << 8)
        h = (h * _FNV_PRIME) & 0xFFFFFFFF
    return h


def hash_vector(text: str, dim: int = DEFAULT_DIM) -> List[float]:
    """Convert text to a signed hashing vector of length ``dim``."""
    vec = [0.0] * dim
    for token in tokenize(text):
        h = fnv1a32(token)
        vec[h % dim] += 1.0 if (h & 1) == 0 else -1.0
    return vec


def cosine(a: List[float], b: List[float]) -> float:
    """Cosine similarity. 0.0 when either vector is all zeros.

    Raises ValueError when the dimensions differ.
    """
    if len(a) != len(b):
        raise ValueError("Vector dimension mismatch: {} vs {}".format(len(a), len(b)))
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def text_similarity(text_a: str, text_b: str, dim: int = DEFAULT_DIM) -> float:
    """Similarity between two texts in one call."""
    return cosine(hash_vector(text_a, dim), hash_vector(text_b, dim))
