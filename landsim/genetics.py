"""Genotype mixing and allele summaries.

Implements the single-locus biallelic model:
  - Mating tensor T[u, v, g]: probability that seed parent u × pollen
    parent v yields offspring g (Mendelian segregation)
  - Tensor validation (shape, non-negativity, rows summing to 1)
  - Allele counts per genotype (copies of the tracked allele)
  - Allele frequencies, heterozygosity and F_ST over a population matrix

The generation engine and the lineage sampler only ever see T as an opaque
(G, G, G) probability tensor, so models with more genotypes can supply
their own.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np

from landsim.types import ConfigurationError


TENSOR_TOL: float = 1e-9


# ═══════════════════════════════════════════════════════════════════════
# MATING TENSOR
# ═══════════════════════════════════════════════════════════════════════

def mating_tensor(genotypes: Sequence[str]) -> np.ndarray:
    """Mendelian offspring distribution for one biallelic locus.

    ``genotypes`` must list exactly three labels in the order
    (homozygous recessive, heterozygote, homozygous dominant), e.g.
    ``['aa', 'aA', 'AA']``. Two-genotype models have no heterozygote to
    carry a cross between the homozygotes and need a custom tensor.

    Returns:
        (3, 3, 3) float64 array T with T[u, v, :] summing to 1.
    """
    if len(genotypes) != 3:
        raise ConfigurationError(
            f"the built-in mating tensor needs exactly 3 genotypes "
            f"(hom-recessive, het, hom-dominant), got {list(genotypes)}; "
            f"supply a custom tensor for other models"
        )
    # Gamete distribution per parent: P(transmit dominant allele).
    q = np.array([0.0, 0.5, 1.0])
    T = np.zeros((3, 3, 3), dtype=np.float64)
    for u in range(3):
        for v in range(3):
            qu, qv = q[u], q[v]
            T[u, v, 0] = (1.0 - qu) * (1.0 - qv)
            T[u, v, 1] = qu * (1.0 - qv) + (1.0 - qu) * qv
            T[u, v, 2] = qu * qv
    return T


def validate_mating_tensor(T, n_genotypes: int) -> np.ndarray:
    """Check T is a (G, G, G) array of probability distributions over g.

    Raises:
        ConfigurationError: Wrong shape, negative entries, or some
            T[u, v, :] not summing to 1 within TENSOR_TOL.
    """
    T = np.asarray(T, dtype=np.float64)
    G = n_genotypes
    if T.shape != (G, G, G):
        raise ConfigurationError(
            f"mating tensor must have shape {(G, G, G)}, got {T.shape}"
        )
    if np.any(T < 0) or not np.all(np.isfinite(T)):
        raise ConfigurationError("mating tensor entries must be finite and non-negative")
    sums = T.sum(axis=2)
    bad = np.abs(sums - 1.0) > TENSOR_TOL
    if np.any(bad):
        u, v = np.argwhere(bad)[0]
        raise ConfigurationError(
            f"mating tensor T[{u}, {v}, :] sums to {sums[u, v]!r}, not 1"
        )
    return T


# ═══════════════════════════════════════════════════════════════════════
# ALLELE SUMMARIES
# ═══════════════════════════════════════════════════════════════════════

def allele_counts(genotypes: Sequence[str], allele: Optional[str] = None) -> np.ndarray:
    """Copies of the tracked allele carried by each genotype.

    With ``allele`` given, counts occurrences of that character in each
    label ('aA' has one 'A'). Otherwise assumes labels are ordered by
    copy number: 0, 1, ..., G-1.
    """
    if allele is None:
        return np.arange(len(genotypes), dtype=np.int64)
    return np.array([str(g).count(allele) for g in genotypes], dtype=np.int64)


def allele_frequencies(
    N: np.ndarray,
    num_alleles: Sequence[int],
    ploidy: int = 2,
) -> np.ndarray:
    """Per-location frequency of the tracked allele.

    q_ℓ = Σ_g N[ℓ, g] × num_alleles[g] / (ploidy × Σ_g N[ℓ, g])

    Returns:
        (n_locations,) float64; NaN where a location is empty.
    """
    N = np.asarray(N, dtype=np.float64)
    num_alleles = np.asarray(num_alleles, dtype=np.float64)
    copies = N @ num_alleles
    total = N.sum(axis=1) * ploidy
    with np.errstate(invalid='ignore', divide='ignore'):
        return np.where(total > 0, copies / np.where(total > 0, total, 1.0), np.nan)


def total_allele_frequency(
    N: np.ndarray,
    num_alleles: Sequence[int],
    ploidy: int = 2,
) -> float:
    """Landscape-wide frequency of the tracked allele (0.0 if empty)."""
    N = np.asarray(N, dtype=np.float64)
    total = N.sum() * ploidy
    if total <= 0:
        return 0.0
    return float(N.sum(axis=0) @ np.asarray(num_alleles, dtype=np.float64) / total)


def heterozygosity(N: np.ndarray, het_index: int = 1) -> float:
    """Observed fraction of heterozygotes across the landscape."""
    N = np.asarray(N, dtype=np.float64)
    total = N.sum()
    if total <= 0:
        return 0.0
    return float(N[:, het_index].sum() / total)


def hardy_weinberg_proportions(q: float) -> np.ndarray:
    """Expected (hom-recessive, het, hom-dominant) proportions at frequency q."""
    p = 1.0 - q
    return np.array([p * p, 2.0 * p * q, q * q])


def compute_fst(
    allele_freqs: np.ndarray,
    weights: Optional[np.ndarray] = None,
) -> float:
    """F_ST across locations: Var(q) / (q̄ (1 − q̄)).

    Args:
        allele_freqs: (n_locations,) per-location frequencies; NaN entries
            (empty locations) are ignored.
        weights: Optional per-location weights (e.g. population sizes).

    Returns:
        F_ST (float). 0.0 with fewer than 2 occupied locations or no
        polymorphism.
    """
    q = np.asarray(allele_freqs, dtype=np.float64)
    ok = np.isfinite(q)
    if weights is None:
        w = np.ones_like(q)
    else:
        w = np.asarray(weights, dtype=np.float64)
    ok &= w > 0
    if np.sum(ok) < 2:
        return 0.0
    q, w = q[ok], w[ok]
    q_bar = float(np.average(q, weights=w))
    denom = q_bar * (1.0 - q_bar)
    if denom <= 1e-10:
        return 0.0
    var_q = float(np.average((q - q_bar) ** 2, weights=w))
    return var_q / denom
