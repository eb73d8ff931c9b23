from __future__ import annotations

from collections.abc import Iterable, Iterator
from itertools import islice
from typing import TypeVar

from jax_easy_fit.core.domain.errors.training import ConfigurationError

T = TypeVar("T")


def segment(source: Iterable[T], size: int) -> Iterator[list[T]]:
    """Group `source` into contiguous lists of `size` items.

    The last group holds the remainder (1..size items). Order is preserved
    and the generator is single-use.
    """

    if size <= 0:
        raise ConfigurationError(f"segment size must be > 0, got {size}")
    return _segments(iter(source), size)


def _segments(it: Iterator[T], size: int) -> Iterator[list[T]]:
    while True:
        group = list(islice(it, size))
        if not group:
            return
        yield group
