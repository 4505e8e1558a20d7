from __future__ import annotations

import math

from agentforge.providers.embeddings import embed_code


def test_embed_code_is_deterministic_and_unit_length() -> None:
    vec1 = embed_code("def load_config(path): return parse(path)", dimension=64)
    vec2 = embed_code("def load_config(path): return parse(path)", dimension=64)

    assert vec1 == vec2
    assert len(vec1) == 64
    assert math.isclose(math.sqrt(sum(v * v for v in vec1)), 1.0, rel_tol=1e-9)


def test_embed_code_changes_with_input() -> None:
    assert embed_code("alpha", dimension=32) != embed_code("beta", dimension=32)


def test_embed_code_never_returns_zero_vector() -> None:
    vector = embed_code("", dimension=8)
    assert vector[0] == 1.0
    assert sum(abs(v) for v in vector) == 1.0
