"""Retained per-generation history for backward lineage sampling.

Stores, for every generation actually computed, the state before the step
and its full breakdown. Memory is O(habitable × genotypes × 7 × generations),
so retention is opt-in on the simulation driver.

Usage:
    history = GenerationHistory()

    # In simulation loop:
    N_next, bd = generation(N, model, return_breakdown=True, ...)
    history.record(t, N, bd)

    # After simulation:
    history.save("history.npz")
    traces = simulate_lineages(history, lineages, model, num_alleles, rng)
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import numpy as np

from landsim.types import BREAKDOWN_FIELDS, Breakdown, BreakdownLike, as_breakdown


@dataclass
class HistoryEntry:
    """One generation: the state at ``time`` and the step to ``time + 1``."""
    time: int
    N_before: np.ndarray
    breakdown: Breakdown


class GenerationHistory:
    """Append-only record of generation breakdowns, keyed by time."""

    def __init__(self):
        self._entries: Dict[int, HistoryEntry] = {}

    def record(self, time: int, N_before: np.ndarray, breakdown: BreakdownLike) -> None:
        """Store one generation.

        Raises:
            ValueError: If ``time`` is not later than every stored time.
            ConfigurationError: If the breakdown lacks a required field.
        """
        time = int(time)
        if self._entries and time <= max(self._entries):
            raise ValueError(
                f"history times must increase; got {time} after {max(self._entries)}"
            )
        self._entries[time] = HistoryEntry(
            time=time,
            N_before=np.array(N_before, dtype=np.float64),
            breakdown=as_breakdown(breakdown),
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[HistoryEntry]:
        for t in self.times:
            yield self._entries[t]

    def __contains__(self, time: int) -> bool:
        return int(time) in self._entries

    @property
    def times(self) -> List[int]:
        """Sorted list of recorded generation times."""
        return sorted(self._entries)

    def get(self, time: int) -> Optional[HistoryEntry]:
        return self._entries.get(int(time))

    def reversed_entries(self) -> Iterator[HistoryEntry]:
        """Entries from latest to earliest."""
        for t in reversed(self.times):
            yield self._entries[t]

    def save(self, path: str) -> None:
        """Save all entries to a compressed npz file.

        Arrays are named ``t{time}_{field}`` plus ``t{time}_N`` and a
        ``meta_times`` index. An empty history writes only ``meta_times``.
        """
        arrays = {}
        for entry in self:
            prefix = f"t{entry.time}"
            arrays[f"{prefix}_N"] = entry.N_before
            for name in BREAKDOWN_FIELDS:
                arrays[f"{prefix}_{name}"] = getattr(entry.breakdown, name)
        arrays['meta_times'] = np.array(self.times, dtype=np.int64)

        Path(path).parent.mkdir(parents=True, exist_ok=True)
        np.savez_compressed(path, **arrays)

    @classmethod
    def load(cls, path: str) -> 'GenerationHistory':
        """Load a history written by save()."""
        history = cls()
        with np.load(path) as data:
            for t in data['meta_times']:
                prefix = f"t{int(t)}"
                breakdown = {name: data[f"{prefix}_{name}"] for name in BREAKDOWN_FIELDS}
                history.record(int(t), data[f"{prefix}_N"], breakdown)
        return history

    def memory_estimate_mb(self) -> float:
        """Approximate memory held by stored arrays."""
        total_bytes = 0
        for entry in self._entries.values():
            total_bytes += entry.N_before.nbytes
            for name in BREAKDOWN_FIELDS:
                total_bytes += getattr(entry.breakdown, name).nbytes
        return total_bytes / (1024 * 1024)
