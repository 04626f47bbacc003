from __future__ import annotations

import pytest

from app.utils import chunk


def test_chunk_splits_into_batches_of_fifty():
    ids = [f"h{i}" for i in range(120)]
    batches = list(chunk(ids, 50))
    assert [len(b) for b in batches] == [50, 50, 20]
    assert [x for b in batches for x in b] == ids


def test_chunk_empty_and_invalid_size():
    assert list(chunk([], 50)) == []
    with pytest.raises(ValueError):
        list(chunk(["a"], 0))
