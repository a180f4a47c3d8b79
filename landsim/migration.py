"""Dispersal kernels and sparse migration matrices.

A migration matrix M has one row per source cell and one column per
destination cell. For a source i and an accessible destination j whose
centres lie within ``radius`` of each other (i == j included):

    M[i, j] = kern(d[i, j] / sigma) * (cell area) / sigma**2

and zero otherwise, so that with the Gaussian kernel

    M[i, j] = exp(-d**2 / sigma**2) / (2 pi sigma**2) * (cell area).

Entries at or below ``min_prob`` are dropped. With ``normalize`` set, every
row with at least one entry is rescaled to sum to ``normalize``; a row with
no reachable accessible cell stays empty. Inaccessible destinations have
empty columns; inaccessible sources behave as usual.

Core functions:
  - get_kernel: resolve a kernel name or callable
  - migration_matrix: build M for a Grid or Population
  - subset_migration: re-index M from one grid onto a sub-grid
  - migrate: push a per-cell quantity through M
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Optional, Union

import numpy as np
from scipy import sparse

from landsim.grid import (
    CoordinateSource,
    Grid,
    check_cell_indices,
    resolve_coordinate_source,
)
from landsim.types import ConfigurationError


Kernel = Callable[[np.ndarray], np.ndarray]


# ═══════════════════════════════════════════════════════════════════════
# KERNELS
# ═══════════════════════════════════════════════════════════════════════

def gaussian_kernel(u: np.ndarray) -> np.ndarray:
    return np.exp(-u * u) / (2.0 * np.pi)


def exponential_kernel(u: np.ndarray) -> np.ndarray:
    return np.exp(-u) / (2.0 * np.pi)


def cauchy_kernel(u: np.ndarray) -> np.ndarray:
    return 1.0 / (2.0 * np.pi * (1.0 + u * u) ** 1.5)


KERNELS: Dict[str, Kernel] = {
    'gaussian': gaussian_kernel,
    'exponential': exponential_kernel,
    'cauchy': cauchy_kernel,
}


def get_kernel(kern: Union[str, Kernel]) -> Kernel:
    """Look up a named kernel, or pass a callable of scaled distance through."""
    if callable(kern):
        return kern
    if isinstance(kern, str) and kern in KERNELS:
        return KERNELS[kern]
    raise ConfigurationError(
        f"kernel must be a callable or one of {sorted(KERNELS)}, got {kern!r}"
    )


# ═══════════════════════════════════════════════════════════════════════
# MIGRATION PARAMETERS
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class Migration:
    """Dispersal parameters for one vector (pollen or seed)."""
    kern: Union[str, Kernel] = 'gaussian'
    sigma: float = 1.0            # kernel distance scale (map units)
    radius: float = 1.0           # truncation distance (map units)
    normalize: Optional[float] = 1.0
    min_prob: float = 0.0

    def validate(self) -> None:
        get_kernel(self.kern)
        if not self.sigma > 0:
            raise ConfigurationError(f"migration sigma must be positive, got {self.sigma}")
        if not self.radius >= 0:
            raise ConfigurationError(f"migration radius must be non-negative, got {self.radius}")
        if self.normalize is not None and not self.normalize > 0:
            raise ConfigurationError(
                f"migration normalize must be positive or None, got {self.normalize}"
            )
        if self.min_prob < 0:
            raise ConfigurationError(f"migration min_prob must be non-negative, got {self.min_prob}")


# ═══════════════════════════════════════════════════════════════════════
# MATRIX CONSTRUCTION
# ═══════════════════════════════════════════════════════════════════════

_UNSET = object()


def migration_matrix(
    source: CoordinateSource,
    migration: Optional[Migration] = None,
    *,
    kern=_UNSET,
    sigma=_UNSET,
    radius=_UNSET,
    normalize=_UNSET,
    min_prob=_UNSET,
    from_cells=None,
    to_cells=None,
    accessible=None,
) -> sparse.csr_matrix:
    """Weighted pseudo-adjacency matrix between grid cells.

    Keyword parameters override the corresponding fields of ``migration``.

    Args:
        source: Grid (all non-missing cells accessible and used as sources by
            default) or Population (its accessible mask and habitable cells).
        migration: Migration parameters; defaults to Migration().
        from_cells: Integer cell indices for rows.
        to_cells: Integer cell indices for columns (default: from_cells).
        accessible: Boolean mask over all grid cells migrants may move to.

    Returns:
        (len(from_cells), len(to_cells)) CSR matrix.

    Raises:
        InvalidArgument: Non-integer from/to, or non-boolean accessible.
        ConfigurationError: Invalid kernel, sigma or radius.
    """
    params = migration if migration is not None else Migration()
    params = Migration(
        kern=params.kern if kern is _UNSET else kern,
        sigma=params.sigma if sigma is _UNSET else sigma,
        radius=params.radius if radius is _UNSET else radius,
        normalize=params.normalize if normalize is _UNSET else normalize,
        min_prob=params.min_prob if min_prob is _UNSET else min_prob,
    )
    params.validate()
    kernel = get_kernel(params.kern)

    grid, accessible, from_cells = resolve_coordinate_source(
        source, accessible=accessible, from_cells=from_cells,
    )
    if to_cells is None:
        to_cells = from_cells
    to_cells = check_cell_indices(to_cells, grid.n_cells, 'to')

    # Only accessible destinations receive migrants; map back to positions
    # within the full to_cells afterwards.
    use_to = accessible[to_cells]
    to_pos = np.flatnonzero(use_to)
    ii, jj, d = grid.pairs_within_radius(from_cells, to_cells[to_pos], params.radius)

    weights = (np.asarray(kernel(d / params.sigma), dtype=np.float64)
               * grid.cell_area / params.sigma ** 2)
    keep = weights > params.min_prob
    ii, jj, weights = ii[keep], to_pos[jj[keep]], weights[keep]

    M = sparse.csr_matrix(
        (weights, (ii, jj)), shape=(len(from_cells), len(to_cells)),
    )
    if params.normalize is not None:
        M = normalize_rows(M, params.normalize)
    return M


def normalize_rows(M: sparse.spmatrix, total: float) -> sparse.csr_matrix:
    """Rescale each non-empty row of M to sum to ``total``; empty rows stay empty."""
    M = sparse.csr_matrix(M, dtype=np.float64, copy=True)
    row_sums = np.asarray(M.sum(axis=1)).ravel()
    scale = np.zeros_like(row_sums)
    nonzero = row_sums > 0
    scale[nonzero] = total / row_sums[nonzero]
    row_of_entry = np.repeat(np.arange(M.shape[0]), np.diff(M.indptr))
    M.data *= scale[row_of_entry]
    return M


# ═══════════════════════════════════════════════════════════════════════
# SUBSETTING
# ═══════════════════════════════════════════════════════════════════════

def subset_migration(
    M: sparse.spmatrix,
    old: Grid,
    new: Grid,
    from_old=None,
    to_old=None,
    from_new=None,
    to_new=None,
) -> sparse.csr_matrix:
    """Convert a migration matrix computed on ``old`` into one for ``new``.

    ``new`` must share ``old``'s resolution and lie within its extent. No
    renormalisation is done.

    Args:
        M: Matrix with rows from_old and columns to_old.
        old, new: Grids.
        from_old, to_old: Cell indices of M's rows/columns in ``old``
            (default: non-missing cells of ``old``; to defaults to from).
        from_new, to_new: Cell indices wanted in ``new`` (same defaults).

    Raises:
        ConfigurationError: Different resolutions, ``new`` not contained in
            ``old``, or a requested cell has no row/column in M.
    """
    if not np.allclose(old.resolution, new.resolution, rtol=0.0, atol=1e-12):
        raise ConfigurationError(
            "Resolutions must be the same for the two grids to subset a "
            f"migration matrix, got {old.resolution} and {new.resolution}"
        )
    if not old.contains(new):
        raise ConfigurationError(
            "New grid must be contained in the old grid to subset a migration matrix."
        )

    from_old = old.non_missing() if from_old is None else check_cell_indices(from_old, old.n_cells, 'from_old')
    to_old = from_old if to_old is None else check_cell_indices(to_old, old.n_cells, 'to_old')
    from_new = new.non_missing() if from_new is None else check_cell_indices(from_new, new.n_cells, 'from_new')
    to_new = from_new if to_new is None else check_cell_indices(to_new, new.n_cells, 'to_new')

    from_inds = _match_cells(old, new, from_new, from_old, 'from')
    to_inds = _match_cells(old, new, to_new, to_old, 'to')
    return sparse.csr_matrix(M)[from_inds, :][:, to_inds]


def _match_cells(old: Grid, new: Grid, new_cells, old_cells, name: str) -> np.ndarray:
    """Positions within old_cells of the old-grid cells under new_cells."""
    old_ids = old.cell_from_xy(new.xy_from_cell(new_cells))
    lookup = np.full(old.n_cells, -1, dtype=np.int64)
    lookup[old_cells] = np.arange(len(old_cells), dtype=np.int64)
    pos = np.where(old_ids >= 0, lookup[np.maximum(old_ids, 0)], -1)
    if np.any(pos < 0):
        raise ConfigurationError(
            f"{int(np.sum(pos < 0))} '{name}' cells of the new grid have no "
            f"counterpart in the migration matrix"
        )
    return pos


# ═══════════════════════════════════════════════════════════════════════
# APPLYING A MATRIX
# ═══════════════════════════════════════════════════════════════════════

def migrate(x: np.ndarray, M: sparse.spmatrix) -> np.ndarray:
    """Move a per-source quantity to destinations: out[j] = Σ_i M[i, j] x[i].

    Works column-wise on (n_from, k) matrices.
    """
    out = M.T @ x
    return np.asarray(out)
