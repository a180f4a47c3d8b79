"""Utility functions for landsim.

General-purpose helpers: hashing and timing.
"""

from __future__ import annotations

import hashlib
import time
from contextlib import contextmanager
from typing import Generator

import numpy as np


def array_sha256(*arrays) -> str:
    """SHA-256 hex digest over the dtype, shape and bytes of each array.

    Used to decide whether a grid is bitwise identical to the one a
    migration matrix was materialised against.
    """
    h = hashlib.sha256()
    for a in arrays:
        a = np.ascontiguousarray(a)
        h.update(str(a.dtype).encode('utf-8'))
        h.update(str(a.shape).encode('utf-8'))
        h.update(a.tobytes())
    return h.hexdigest()


def config_hash(yaml_text: str) -> str:
    """SHA-256 of a YAML config string (for tagging saved output)."""
    return hashlib.sha256(yaml_text.encode('utf-8')).hexdigest()


@contextmanager
def timer(label: str = "") -> Generator[None, None, None]:
    """Simple context-manager timer. Prints elapsed time on exit."""
    start = time.perf_counter()
    yield
    elapsed = time.perf_counter() - start
    if label:
        print(f"[{label}] {elapsed:.3f}s")
    else:
        print(f"Elapsed: {elapsed:.3f}s")
