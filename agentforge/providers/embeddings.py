from __future__ import annotations

import hashlib
import math
import re

from agentforge.core.config import DEFAULT_EMBED_DIM

_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")


def _hash_token(token: str, dimension: int) -> tuple[int, float]:
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
    # Hash to a stable index within the model dimension.
    idx = int(digest[:8], 16) % dimension
    sign = 1.0 if int(digest[8:12], 16) % 2 == 0 else -1.0
    magnitude = (int(digest[12:20], 16) % 1000) / 1000.0
    return idx, sign * (0.2 + magnitude)


def embed_code(text: str, *, dimension: int = DEFAULT_EMBED_DIM) -> list[float]:
    """Deterministic bag-of-tokens embedding for seeding and local runs.

    Real vectors come from the analysis pipeline; this only gives repeatable,
    non-zero vectors whose similarity tracks shared identifiers.
    """
    vector = [0.0] * dimension
    tokens = _TOKEN_RE.findall(text.lower())
    for token in tokens:
        idx, value = _hash_token(token, dimension)
        vector[idx] += value

    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        # Keep empty input embeddable: the store rejects all-zero vectors.
        vector[0] = 1.0
        return vector
    return [v / norm for v in vector]
