"""Tests for landsim.history — retained generation breakdowns."""

import numpy as np
import pytest

from landsim.history import GenerationHistory
from landsim.types import BREAKDOWN_FIELDS, Breakdown, ConfigurationError


def make_breakdown(value=1.0, shape=(2, 3)):
    return Breakdown(**{name: np.full(shape, value + i)
                        for i, name in enumerate(BREAKDOWN_FIELDS)})


class TestGenerationHistory:
    def test_record_and_get(self):
        h = GenerationHistory()
        h.record(0, np.ones((2, 3)), make_breakdown())
        entry = h.get(0)
        assert entry.time == 0
        np.testing.assert_array_equal(entry.N_before, 1.0)
        assert h.get(5) is None

    def test_times_sorted_and_membership(self):
        h = GenerationHistory()
        for t in (0, 1, 2):
            h.record(t, np.zeros((2, 3)), make_breakdown())
        assert h.times == [0, 1, 2]
        assert len(h) == 3
        assert 1 in h
        assert 3 not in h

    def test_iteration_order(self):
        h = GenerationHistory()
        for t in (3, 4, 5):
            h.record(t, np.zeros((2, 3)), make_breakdown(float(t)))
        assert [e.time for e in h] == [3, 4, 5]
        assert [e.time for e in h.reversed_entries()] == [5, 4, 3]

    def test_times_must_increase(self):
        h = GenerationHistory()
        h.record(2, np.zeros((2, 3)), make_breakdown())
        with pytest.raises(ValueError):
            h.record(2, np.zeros((2, 3)), make_breakdown())
        with pytest.raises(ValueError):
            h.record(1, np.zeros((2, 3)), make_breakdown())

    def test_accepts_mapping(self):
        h = GenerationHistory()
        h.record(0, np.zeros((2, 3)), make_breakdown().as_dict())
        assert isinstance(h.get(0).breakdown, Breakdown)

    def test_rejects_incomplete_breakdown(self):
        h = GenerationHistory()
        bd = make_breakdown().as_dict()
        bd.pop('pollen')
        with pytest.raises(ConfigurationError, match="pollen"):
            h.record(0, np.zeros((2, 3)), bd)

    def test_stored_state_is_a_copy(self):
        h = GenerationHistory()
        N = np.zeros((2, 3))
        h.record(0, N, make_breakdown())
        N[0, 0] = 99.0
        assert h.get(0).N_before[0, 0] == 0.0

    def test_save_load_roundtrip(self, tmp_path):
        h = GenerationHistory()
        for t in (0, 1):
            h.record(t, np.full((2, 3), float(t)), make_breakdown(10.0 * t))
        path = tmp_path / "out" / "history.npz"
        h.save(str(path))
        loaded = GenerationHistory.load(str(path))
        assert loaded.times == [0, 1]
        for t in (0, 1):
            np.testing.assert_array_equal(loaded.get(t).N_before, h.get(t).N_before)
            for name in BREAKDOWN_FIELDS:
                np.testing.assert_array_equal(
                    getattr(loaded.get(t).breakdown, name),
                    getattr(h.get(t).breakdown, name),
                )

    def test_save_empty_roundtrip(self, tmp_path):
        path = tmp_path / "history.npz"
        GenerationHistory().save(str(path))
        assert path.exists()
        loaded = GenerationHistory.load(str(path))
        assert len(loaded) == 0
        assert loaded.times == []

    def test_memory_estimate(self):
        h = GenerationHistory()
        h.record(0, np.zeros((2, 3)), make_breakdown())
        expected_bytes = 7 * 2 * 3 * 8
        assert h.memory_estimate_mb() == pytest.approx(expected_bytes / (1024 * 1024))
