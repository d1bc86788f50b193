"""Block structure of a subsampled (``ustat``) ensemble.

Trees are grouped into ``n_blocks`` consecutive blocks of ``block_size``
trees.  All trees in a block share one pivot subsample drawn at training
time, so within a block the trees are exchangeable given the pivot.  The
U-statistics variance estimator reads the block membership from here rather
than recomputing it.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .exceptions import ConfigurationError


@dataclass(frozen=True)
class Block:
    block_id: int
    pivot: Tuple[int, ...]
    trees: Tuple[int, ...]


@dataclass(frozen=True)
class BlockDesign:
    """Partition of ``n_estimators`` trees into equal, consecutive blocks."""

    n_estimators: int
    n_blocks: int
    block_size: int

    def __post_init__(self) -> None:
        if self.n_blocks < 2:
            raise ConfigurationError(f"n_blocks must be at least 2, got {self.n_blocks}")
        if self.block_size < 2:
            raise ConfigurationError(f"block_size must be at least 2, got {self.block_size}")
        if self.n_blocks * self.block_size != self.n_estimators:
            raise ConfigurationError(
                "n_estimators must equal n_blocks * block_size; got "
                f"n_estimators={self.n_estimators}, n_blocks={self.n_blocks}, "
                f"block_size={self.block_size}")

    @property
    def block_of_tree(self) -> np.ndarray:
        return np.repeat(np.arange(self.n_blocks), self.block_size)

    def members(self, block: int) -> np.ndarray:
        if not 0 <= block < self.n_blocks:
            raise IndexError(f"block {block} out of range for {self.n_blocks} blocks")
        start = block * self.block_size
        return np.arange(start, start + self.block_size)

    def slices(self) -> list:
        return [slice(b * self.block_size, (b + 1) * self.block_size)
                for b in range(self.n_blocks)]

    def table(self, pivots) -> Tuple[Block, ...]:
        """Lookup table ``block id -> pivot rows -> member tree ids``."""
        pivots = np.asarray(pivots)
        if pivots.shape[0] != self.n_blocks:
            raise ConfigurationError(
                f"expected one pivot per block ({self.n_blocks}), got {pivots.shape[0]}")
        return tuple(
            Block(block_id=b,
                  pivot=tuple(int(i) for i in np.atleast_1d(pivots[b])),
                  trees=tuple(int(t) for t in self.members(b)))
            for b in range(self.n_blocks))


def resolve_block_design(n_estimators: Optional[int] = None,
                         n_blocks: Optional[int] = None,
                         block_size: Optional[int] = None) -> BlockDesign:
    """
    Derive the missing member of ``(n_estimators, n_blocks, block_size)``.

    Exactly two of the three are needed; the third follows from
    ``n_estimators = n_blocks * block_size``.  Passing all three is accepted
    when they agree.

    Raises
    ------
    ConfigurationError
        If fewer than two are given, or the values do not form an exact
        partition into blocks of at least two trees.
    """
    given = [v is not None for v in (n_estimators, n_blocks, block_size)]
    if sum(given) < 2:
        raise ConfigurationError(
            "two of n_estimators, n_blocks and block_size must be supplied")
    for name, value in (("n_estimators", n_estimators), ("n_blocks", n_blocks),
                        ("block_size", block_size)):
        if value is not None and int(value) != value:
            raise ConfigurationError(f"{name} must be an integer, got {value!r}")

    if n_estimators is None:
        n_estimators = int(n_blocks) * int(block_size)
    elif n_blocks is None:
        if block_size <= 0 or n_estimators % block_size:
            raise ConfigurationError(
                f"n_estimators={n_estimators} is not divisible by block_size={block_size}")
        n_blocks = n_estimators // block_size
    elif block_size is None:
        if n_blocks <= 0 or n_estimators % n_blocks:
            raise ConfigurationError(
                f"n_estimators={n_estimators} is not divisible by n_blocks={n_blocks}")
        block_size = n_estimators // n_blocks
    return BlockDesign(n_estimators=int(n_estimators), n_blocks=int(n_blocks),
                       block_size=int(block_size))
