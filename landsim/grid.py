"""Landscape grid, habitat index and population containers.

The simulation core needs only a read-only coordinate/distance oracle from
the landscape: which cells exist, where their centres are, how far apart
they are, and which cells lie within a radius of each other. ``Grid``
provides exactly that for a regular raster; file I/O and rendering are
left to external tooling, which consumes the plain arrays exposed here.

Core classes:
  - Grid: regular raster (NaN = missing cell) acting as the spatial oracle
  - HabitatIndex: bidirectional map between grid cell and state-matrix row
  - Population: grid + habitable/accessible masks + genotype counts N

Core functions:
  - resolve_coordinate_source: turn a Grid or Population into the
    canonical (grid, accessible, from_cells) triple used by matrix builders
  - select_clumps: group habitat into regions separated by a distance
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np
from scipy import ndimage
from scipy.spatial import cKDTree

from landsim.types import ConfigurationError, InvalidArgument
from landsim.utils import array_sha256


# ═══════════════════════════════════════════════════════════════════════
# GRID (spatial oracle)
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class Grid:
    """Regular raster of cells numbered row-major from the top-left.

    Cell ``k`` sits at row ``k // ncol``, column ``k % ncol``; its centre is
    ``(xmin + (col + 0.5) * xres, ymax - (row + 0.5) * yres)``.
    """
    values: np.ndarray
    resolution: Tuple[float, float] = (1.0, 1.0)   # (xres, yres)
    origin: Tuple[float, float] = (0.0, 0.0)       # (xmin, ymin)

    def __post_init__(self):
        self.values = np.asarray(self.values, dtype=np.float64)
        if self.values.ndim != 2:
            raise ConfigurationError(
                f"grid values must be 2-D, got shape {self.values.shape}"
            )
        if np.ndim(self.resolution) == 0:
            self.resolution = (float(self.resolution), float(self.resolution))
        self.resolution = (float(self.resolution[0]), float(self.resolution[1]))
        if self.resolution[0] <= 0 or self.resolution[1] <= 0:
            raise ConfigurationError(
                f"grid resolution must be positive, got {self.resolution}"
            )
        self.origin = (float(self.origin[0]), float(self.origin[1]))

    @classmethod
    def uniform(
        cls,
        nrow: int,
        ncol: int,
        resolution: Union[float, Tuple[float, float]] = 1.0,
        origin: Tuple[float, float] = (0.0, 0.0),
        missing: Optional[Sequence[int]] = None,
    ) -> 'Grid':
        """All-ones grid with optional missing (NaN) cells."""
        values = np.ones((nrow, ncol), dtype=np.float64)
        if missing is not None and len(missing) > 0:
            values.ravel()[np.asarray(missing, dtype=np.int64)] = np.nan
        return cls(values=values, resolution=resolution, origin=origin)

    # ── geometry ─────────────────────────────────────────────────────

    @property
    def nrow(self) -> int:
        return self.values.shape[0]

    @property
    def ncol(self) -> int:
        return self.values.shape[1]

    @property
    def n_cells(self) -> int:
        return self.values.size

    @property
    def cell_area(self) -> float:
        return self.resolution[0] * self.resolution[1]

    @property
    def extent(self) -> Tuple[float, float, float, float]:
        """(xmin, xmax, ymin, ymax)."""
        xmin, ymin = self.origin
        return (xmin, xmin + self.ncol * self.resolution[0],
                ymin, ymin + self.nrow * self.resolution[1])

    def contains(self, other: 'Grid', tol: float = 1e-9) -> bool:
        """True if other's extent lies within this grid's extent."""
        a = self.extent
        b = other.extent
        return (b[0] >= a[0] - tol and b[1] <= a[1] + tol
                and b[2] >= a[2] - tol and b[3] <= a[3] + tol)

    def non_missing(self) -> np.ndarray:
        """Indices of cells with non-NaN values."""
        return np.flatnonzero(~np.isnan(self.values.ravel()))

    def non_missing_mask(self) -> np.ndarray:
        return ~np.isnan(self.values.ravel())

    def xy_from_cell(self, cells) -> np.ndarray:
        """(n, 2) centre coordinates of the given cells."""
        cells = np.asarray(cells, dtype=np.int64)
        rows = cells // self.ncol
        cols = cells % self.ncol
        xmin, xmax, ymin, ymax = self.extent
        x = xmin + (cols + 0.5) * self.resolution[0]
        y = ymax - (rows + 0.5) * self.resolution[1]
        return np.column_stack([x, y])

    def cell_from_xy(self, xy) -> np.ndarray:
        """Cell index containing each point; -1 for points outside the grid."""
        xy = np.atleast_2d(np.asarray(xy, dtype=np.float64))
        xmin, xmax, ymin, ymax = self.extent
        cols = np.floor((xy[:, 0] - xmin) / self.resolution[0]).astype(np.int64)
        rows = np.floor((ymax - xy[:, 1]) / self.resolution[1]).astype(np.int64)
        inside = (cols >= 0) & (cols < self.ncol) & (rows >= 0) & (rows < self.nrow)
        return np.where(inside, rows * self.ncol + cols, -1)

    @staticmethod
    def distance(xy1, xy2) -> np.ndarray:
        """Element-wise Euclidean distance between paired coordinates."""
        xy1 = np.atleast_2d(np.asarray(xy1, dtype=np.float64))
        xy2 = np.atleast_2d(np.asarray(xy2, dtype=np.float64))
        return np.hypot(xy1[:, 0] - xy2[:, 0], xy1[:, 1] - xy2[:, 1])

    def pairs_within_radius(
        self,
        from_cells,
        to_cells,
        radius: float,
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """All (from, to) pairs whose centres are at most ``radius`` apart.

        Includes zero-distance pairs (a cell paired with itself).

        Returns:
            (i, j, d): positions into from_cells and to_cells, and distances.
        """
        from_cells = np.asarray(from_cells, dtype=np.int64)
        to_cells = np.asarray(to_cells, dtype=np.int64)
        empty = (np.zeros(0, np.int64), np.zeros(0, np.int64), np.zeros(0))
        if len(from_cells) == 0 or len(to_cells) == 0:
            return empty

        from_xy = self.xy_from_cell(from_cells)
        to_xy = self.xy_from_cell(to_cells)
        tree = cKDTree(to_xy)
        neighbours = tree.query_ball_point(from_xy, r=radius)

        counts = np.array([len(n) for n in neighbours], dtype=np.int64)
        if counts.sum() == 0:
            return empty
        ii = np.repeat(np.arange(len(from_cells), dtype=np.int64), counts)
        jj = np.concatenate([
            np.sort(np.asarray(n, dtype=np.int64)) for n in neighbours
        ])
        d = self.distance(from_xy[ii], to_xy[jj])
        return ii, jj, d

    # ── conversion ───────────────────────────────────────────────────

    def to_array(self, cell_values, cells=None) -> np.ndarray:
        """Scatter per-cell values onto an (nrow, ncol) array, NaN elsewhere."""
        if cells is None:
            cells = self.non_missing()
        out = np.full(self.n_cells, np.nan, dtype=np.float64)
        out[np.asarray(cells, dtype=np.int64)] = cell_values
        return out.reshape(self.values.shape)

    def fingerprint(self) -> str:
        """Hash of geometry and missing-cell pattern."""
        return array_sha256(
            np.isnan(self.values),
            np.asarray(self.resolution),
            np.asarray(self.origin),
        )


# ═══════════════════════════════════════════════════════════════════════
# HABITAT INDEX (grid cell ↔ state row)
# ═══════════════════════════════════════════════════════════════════════

class HabitatIndex:
    """Injective partial map from grid cell index to state-matrix row.

    ``row(cell)`` is defined only for habitable cells; ``cell(row)`` is its
    inverse. Nothing aliases the state matrix onto grid storage: all
    translation goes through this object.
    """

    def __init__(self, cells, n_cells: int):
        cells = np.asarray(cells, dtype=np.int64)
        if len(np.unique(cells)) != len(cells):
            raise InvalidArgument("habitat index cells must be unique")
        if len(cells) and (cells.min() < 0 or cells.max() >= n_cells):
            raise InvalidArgument(
                f"habitat index cells must lie in [0, {n_cells}), "
                f"got range [{cells.min()}, {cells.max()}]"
            )
        self.cells = cells
        self.n_cells = n_cells
        self._row_of = np.full(n_cells, -1, dtype=np.int64)
        self._row_of[cells] = np.arange(len(cells), dtype=np.int64)

    def __len__(self) -> int:
        return len(self.cells)

    def __contains__(self, cell) -> bool:
        return 0 <= cell < self.n_cells and self._row_of[cell] >= 0

    def row(self, cell: int) -> int:
        if cell not in self:
            raise KeyError(f"cell {cell} is not habitable")
        return int(self._row_of[cell])

    def rows(self, cells) -> np.ndarray:
        """Vectorised row lookup; -1 where a cell is not habitable."""
        cells = np.asarray(cells, dtype=np.int64)
        out = np.full(cells.shape, -1, dtype=np.int64)
        valid = (cells >= 0) & (cells < self.n_cells)
        out[valid] = self._row_of[cells[valid]]
        return out

    def cell(self, row: int) -> int:
        return int(self.cells[row])

    def mask(self) -> np.ndarray:
        return self._row_of >= 0


# ═══════════════════════════════════════════════════════════════════════
# POPULATION
# ═══════════════════════════════════════════════════════════════════════

def _as_cell_mask(mask, n_cells: int, name: str) -> np.ndarray:
    mask = np.asarray(mask)
    if mask.dtype != np.bool_:
        raise InvalidArgument(
            f"'{name}' must be a boolean mask over grid cells "
            f"(not a vector of indices), got dtype {mask.dtype}"
        )
    mask = mask.ravel()
    if mask.size != n_cells:
        raise InvalidArgument(
            f"'{name}' mask has {mask.size} entries, grid has {n_cells} cells"
        )
    return mask


@dataclass
class Population:
    """Genotype counts on the habitable cells of a grid.

    N has shape (n_habitable, n_genotypes); row r holds the counts at grid
    cell ``index.cell(r)``. Accessible cells may receive migrants (pollen,
    seed) but only habitable cells hold individuals.
    """
    habitat: Grid
    genotypes: List[str]
    N: Optional[np.ndarray] = None
    habitable: Optional[np.ndarray] = None
    accessible: Optional[np.ndarray] = None
    index: HabitatIndex = field(init=False, repr=False)

    def __post_init__(self):
        n_cells = self.habitat.n_cells
        present = self.habitat.non_missing_mask()
        if self.habitable is None:
            self.habitable = present.copy()
        if self.accessible is None:
            self.accessible = present.copy()
        self.habitable = _as_cell_mask(self.habitable, n_cells, 'habitable')
        self.accessible = _as_cell_mask(self.accessible, n_cells, 'accessible')

        if np.any(self.habitable & ~present):
            raise ConfigurationError("habitable cells must be non-missing in the habitat grid")
        if np.any(self.habitable & ~self.accessible):
            raise ConfigurationError("every habitable cell must also be accessible")

        self.genotypes = [str(g) for g in self.genotypes]
        if len(self.genotypes) == 0:
            raise ConfigurationError("population needs at least one genotype")
        if len(set(self.genotypes)) != len(self.genotypes):
            raise ConfigurationError(f"genotype labels must be unique, got {self.genotypes}")

        self.index = HabitatIndex(np.flatnonzero(self.habitable), n_cells)

        shape = (len(self.index), len(self.genotypes))
        if self.N is None:
            self.N = np.zeros(shape, dtype=np.float64)
        self.N = np.array(self.N, dtype=np.float64)
        if self.N.shape != shape:
            raise ConfigurationError(
                f"population N must have shape {shape} "
                f"(habitable cells × genotypes), got {self.N.shape}"
            )
        if np.any(self.N < 0) or not np.all(np.isfinite(self.N)):
            raise ConfigurationError("population N must be finite and non-negative")

    @property
    def n_habitable(self) -> int:
        return len(self.index)

    @property
    def n_genotypes(self) -> int:
        return len(self.genotypes)

    def habitable_cells(self) -> np.ndarray:
        return self.index.cells

    def accessible_cells(self) -> np.ndarray:
        return np.flatnonzero(self.accessible)

    def genotype_index(self, genotype: Union[str, int]) -> int:
        if isinstance(genotype, str):
            if genotype not in self.genotypes:
                raise KeyError(f"unknown genotype '{genotype}'")
            return self.genotypes.index(genotype)
        return int(genotype)

    def to_grid(self, genotype: Optional[Union[str, int]] = None,
                N: Optional[np.ndarray] = None) -> np.ndarray:
        """(nrow, ncol) array of counts for one genotype, or totals if None."""
        N = self.N if N is None else N
        if genotype is None:
            vals = N.sum(axis=1)
        else:
            vals = N[:, self.genotype_index(genotype)]
        return self.habitat.to_array(vals, cells=self.index.cells)

    def with_state(self, N: np.ndarray) -> 'Population':
        """New Population sharing this grid and masks, holding N."""
        return Population(
            habitat=self.habitat,
            genotypes=list(self.genotypes),
            N=N,
            habitable=self.habitable,
            accessible=self.accessible,
        )

    def total(self) -> float:
        return float(self.N.sum())

    def fingerprint(self) -> str:
        """Hash of grid geometry and both masks."""
        return array_sha256(
            np.isnan(self.habitat.values),
            np.asarray(self.habitat.resolution),
            np.asarray(self.habitat.origin),
            self.habitable,
            self.accessible,
        )


# ═══════════════════════════════════════════════════════════════════════
# COORDINATE SOURCE RESOLUTION
# ═══════════════════════════════════════════════════════════════════════

CoordinateSource = Union[Grid, Population]


class ResolvedSource(NamedTuple):
    grid: Grid
    accessible: np.ndarray   # bool over all grid cells
    from_cells: np.ndarray   # int64 cell indices


def check_cell_indices(cells, n_cells: int, name: str) -> np.ndarray:
    """Validate an integer vector of grid cell indices."""
    arr = np.asarray(cells)
    if arr.dtype == np.bool_ or not np.issubdtype(arr.dtype, np.integer):
        raise InvalidArgument(
            f"'{name}' must be integer-valued cell indices (not logical), "
            f"got dtype {arr.dtype}"
        )
    arr = arr.astype(np.int64).ravel()
    if len(arr) and (arr.min() < 0 or arr.max() >= n_cells):
        raise InvalidArgument(
            f"'{name}' indices must lie in [0, {n_cells})"
        )
    return arr


def resolve_coordinate_source(
    source: CoordinateSource,
    accessible=None,
    from_cells=None,
) -> ResolvedSource:
    """Resolve a Grid or Population into (grid, accessible, from_cells).

    Defaults:
      Grid:       accessible = non-missing cells, from = non-missing cells
      Population: accessible = population.accessible, from = habitable cells
    """
    if isinstance(source, Population):
        grid = source.habitat
        if accessible is None:
            accessible = source.accessible
        if from_cells is None:
            from_cells = source.habitable_cells()
    elif isinstance(source, Grid):
        grid = source
        if accessible is None:
            accessible = grid.non_missing_mask()
        if from_cells is None:
            from_cells = grid.non_missing()
    else:
        raise InvalidArgument(
            f"coordinate source must be a Grid or Population, "
            f"got {type(source).__name__}"
        )
    accessible = _as_cell_mask(accessible, grid.n_cells, 'accessible')
    from_cells = check_cell_indices(from_cells, grid.n_cells, 'from')
    return ResolvedSource(grid, accessible, from_cells)


# ═══════════════════════════════════════════════════════════════════════
# HABITAT CLUMPS
# ═══════════════════════════════════════════════════════════════════════

def select_clumps(grid: Grid, threshold: float) -> Grid:
    """Divide non-missing cells into regions separated by a minimum distance.

    Two cells end up in the same region if they can be joined by a chain of
    cells each lying within ``threshold`` of some non-missing cell. Output
    values are region ranks by decreasing size (1 = largest); missing cells
    stay NaN.
    """
    missing = np.isnan(grid.values)
    out = np.full(grid.values.shape, np.nan)
    if missing.all():
        return Grid(out, grid.resolution, grid.origin)

    xres, yres = grid.resolution
    dist = ndimage.distance_transform_edt(missing, sampling=(yres, xres))
    labels, n_regions = ndimage.label(dist <= threshold, structure=np.ones((3, 3)))

    sizes = np.bincount(labels[~missing], minlength=n_regions + 1)[1:]
    order = np.argsort(-sizes, kind='stable')
    rank = np.empty(n_regions, dtype=np.int64)
    rank[order] = np.arange(1, n_regions + 1)

    out[~missing] = rank[labels[~missing] - 1]
    return Grid(out, grid.resolution, grid.origin)
