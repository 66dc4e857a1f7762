"""
Subset Samplers for Sample-Consensus Estimation.

- UniformSampler: every subset equally likely (RANSAC, MSAC, LMedS)
- ProsacSampler: progressive sampling over items sorted by decreasing
  quality (PROSAC, PROMedS). Starts from the best items and widens the
  pool following the growth function of Chum and Matas, "Matching with
  PROSAC - Progressive Sample Consensus", CVPR 2005.
"""

from typing import Optional, Sequence
import math

import numpy as np


class UniformSampler:
    """Draw subsets uniformly without replacement."""

    def __init__(self, num_items: int, subset_size: int, rng: np.random.Generator):
        if subset_size > num_items:
            raise ValueError(f"Subset size {subset_size} exceeds item count {num_items}")
        self.num_items = num_items
        self.subset_size = subset_size
        self.rng = rng

    def sample(self) -> np.ndarray:
        return self.rng.choice(self.num_items, size=self.subset_size, replace=False)


class ProsacSampler:
    """
    Progressive sampler biased towards high quality items.

    Sample t is drawn from the n(t) best items, always containing the
    n-th best one, where n(t) grows as t approaches the growth function
    T'_n. Once the pool covers every item sampling is uniform.

    Usage:
        sampler = ProsacSampler(quality_scores, subset_size=3, rng=rng,
                                max_samples=5000)
        indices = sampler.sample()
    """

    def __init__(
        self,
        quality_scores: Sequence[float],
        subset_size: int,
        rng: np.random.Generator,
        max_samples: int = 200000,
    ):
        """
        Initialize sampler.

        Args:
            quality_scores: Quality per item (higher is sampled first)
            subset_size: Items per subset
            rng: Random generator
            max_samples: Number of samples T_N after which PROSAC would
                reach uniform sampling
        """
        scores = np.asarray(quality_scores, dtype=float).reshape(-1)
        num_items = scores.size
        if subset_size > num_items:
            raise ValueError(f"Subset size {subset_size} exceeds item count {num_items}")

        # Stable so that equal scores keep the given order
        self.sorted_indices = np.argsort(-scores, kind='stable')
        self.num_items = num_items
        self.subset_size = subset_size
        self.rng = rng
        self.max_samples = max(int(max_samples), 1)

        m = subset_size
        self._t = 0
        self._n = m
        # T_m = T_N * prod_{i<m} (m - i) / (N - i)
        t_n = float(self.max_samples)
        for i in range(m):
            t_n *= (m - i) / (num_items - i)
        self._t_n = t_n
        self._t_n_prime = 1

    @property
    def pool_size(self) -> int:
        """Number of best items currently eligible for sampling."""
        return self._n

    def _grow(self):
        m = self.subset_size
        n = self._n
        t_next = self._t_n * (n + 1) / (n + 1 - m)
        self._t_n_prime += int(math.ceil(t_next - self._t_n))
        self._t_n = t_next
        self._n = n + 1

    def sample(self) -> np.ndarray:
        m = self.subset_size
        self._t += 1
        if self._t > self._t_n_prime and self._n < self.num_items:
            self._grow()

        n = self._n
        if self._t_n_prime < self._t or n == m:
            positions = self.rng.choice(n, size=m, replace=False)
        else:
            # m - 1 from the n - 1 best, plus the n-th best
            positions = np.append(self.rng.choice(n - 1, size=m - 1, replace=False), n - 1)
        return self.sorted_indices[positions]


def create_sampler(
    progressive: bool,
    num_items: int,
    subset_size: int,
    rng: np.random.Generator,
    quality_scores: Optional[Sequence[float]] = None,
    max_samples: int = 200000,
):
    """Create a progressive sampler when quality scores drive sampling, else uniform."""
    if not progressive:
        return UniformSampler(num_items, subset_size, rng)
    if quality_scores is None:
        quality_scores = np.ones(num_items)
    return ProsacSampler(quality_scores, subset_size, rng, max_samples=max_samples)
