from __future__ import annotations

import math

import pytest

from jax_easy_fit.core.domain.errors.training import ConfigurationError
from jax_easy_fit.core.domain.utils.batching import segment


@pytest.mark.parametrize("n,k", [(0, 3), (1, 1), (7, 3), (9, 3), (10, 4), (5, 10)])
def test_segment_group_sizes_and_order(n: int, k: int) -> None:
    source = list(range(n))
    groups = list(segment(source, k))

    assert len(groups) == math.ceil(n / k)
    assert all(len(g) == k for g in groups[:-1])
    if groups:
        assert len(groups[-1]) == (n % k or k)
    assert [x for g in groups for x in g] == source


def test_segment_is_lazy_and_single_use() -> None:
    consumed = []

    def source():
        for i in range(5):
            consumed.append(i)
            yield i

    groups = segment(source(), 2)
    assert consumed == []
    assert next(groups) == [0, 1]
    assert consumed == [0, 1]
    assert list(groups) == [[2, 3], [4]]
    assert list(groups) == []


@pytest.mark.parametrize("size", [0, -2])
def test_segment_rejects_non_positive_size_eagerly(size: int) -> None:
    with pytest.raises(ConfigurationError):
        segment([1, 2, 3], size)
