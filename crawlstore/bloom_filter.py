import math
from typing import Iterable, Optional

import mmh3
import numpy as np

TARGET_FPR = 0.001
DEFAULT_EXPECTED_ITEMS = 1_000_000


def calculate_optimal_params(n: int, p: float) -> tuple[int, int]:
    """Calculate optimal m (bits) and k (hash functions)."""
    if n <= 0 or p <= 0 or p >= 1:
        raise ValueError("Invalid parameters")

    m = -n * math.log(p) / (math.log(2) ** 2)
    k = (m / n) * math.log(2)

    return int(math.ceil(m)), int(math.ceil(k))


class BloomFilter:
    """Packed-bit Bloom filter over raw byte keys.

    Used in front of the visited bucket: contains() may give false
    positives but never false negatives.
    """

    def __init__(self,
                 expected_items: Optional[int] = None,
                 false_positive_rate: Optional[float] = None,
                 m: Optional[int] = None,
                 k: Optional[int] = None):
        if expected_items is not None:
            self.m, self.k = calculate_optimal_params(expected_items, false_positive_rate or TARGET_FPR)
        elif m is not None and k is not None:
            self.m = m
            self.k = k
        else:
            self.m, self.k = calculate_optimal_params(DEFAULT_EXPECTED_ITEMS, TARGET_FPR)

        self.n_added = 0
        self.bit_array = np.zeros((self.m + 7) // 8, dtype=np.uint8)
        self._steps = np.arange(self.k, dtype=np.uint64)

    def _positions(self, key: bytes) -> np.ndarray:
        """k bit positions by double hashing: h1 + i*h2 (mod m)."""
        h1 = mmh3.hash(key, 0, signed=False)
        h2 = mmh3.hash(key, h1, signed=False)
        return (np.uint64(h1) + self._steps * np.uint64(h2)) % np.uint64(self.m)

    @staticmethod
    def _split(positions: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Byte indices and single-bit masks for a set of bit positions."""
        index = (positions // np.uint64(8)).astype(np.intp)
        masks = np.left_shift(np.uint8(1), (positions % np.uint64(8)).astype(np.uint8))
        return index, masks

    def add(self, key: bytes) -> None:
        index, masks = self._split(self._positions(key))
        np.bitwise_or.at(self.bit_array, index, masks)
        self.n_added += 1

    def add_batch(self, keys: Iterable[bytes]) -> None:
        for key in keys:
            self.add(key)

    def contains(self, key: bytes) -> bool:
        index, masks = self._split(self._positions(key))
        return bool((self.bit_array[index] & masks).all())

    def get_stats(self) -> dict:
        set_bits = int(np.unpackbits(self.bit_array).sum())
        fill_ratio = set_bits / self.m if self.m > 0 else 0
        return {
            'items_added': self.n_added,
            'size_bits': self.m,
            'num_hashes': self.k,
            'memory_mb': self.bit_array.nbytes / (1024 * 1024),
            'fill_ratio': fill_ratio,
            'estimated_fpr': (fill_ratio ** self.k) if self.n_added > 0 else 0,
            'set_bits': set_bits,
        }

    def __contains__(self, key: bytes) -> bool:
        return self.contains(key)

    def __len__(self) -> int:
        return self.n_added


def create_visited_filter(expected_items: int = DEFAULT_EXPECTED_ITEMS,
                          false_positive_rate: float = TARGET_FPR) -> BloomFilter:
    return BloomFilter(
        expected_items=expected_items,
        false_positive_rate=false_positive_rate
    )
