# src/buttongeo/io/field_tables.py
from __future__ import annotations
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Optional

import numpy as np


@dataclass(frozen=True)
class VectorSampleSet:
    """
    Point samples of a 3-vector quantity.

    positions : (N, 3) float, read-only
    vectors   : (N, 3) float, read-only (field value or dynode orientation)
    """
    positions: np.ndarray
    vectors: np.ndarray
    source: str = ""

    def __len__(self) -> int:
        return len(self.positions)

    @property
    def is_empty(self) -> bool:
        return len(self.positions) == 0


def parse_vector_table(text: str) -> tuple[np.ndarray, np.ndarray]:
    """
    Parse "<header>\\n x y z vx vy vz ..." text.

    Values are consumed as a whitespace token stream, six at a time, until the
    stream ends or a token fails to parse; a trailing incomplete group is dropped.
    """
    _, _, body = text.partition("\n")
    values = []
    for tok in body.split():
        try:
            values.append(float(tok))
        except ValueError:
            break
    n = len(values) // 6
    arr = np.asarray(values[: 6 * n], dtype=np.float64).reshape(n, 6)
    return arr[:, :3].copy(), arr[:, 3:].copy()


def _frozen(positions: np.ndarray, vectors: np.ndarray, source: str) -> VectorSampleSet:
    positions.setflags(write=False)
    vectors.setflags(write=False)
    return VectorSampleSet(positions, vectors, source)


@lru_cache(maxsize=None)
def _load_cached(path: str) -> VectorSampleSet:
    # headers may carry non-UTF-8 unit labels; latin-1 maps every byte
    pos, vec = parse_vector_table(Path(path).read_text(encoding="latin-1"))
    return _frozen(pos, vec, path)


def load_field_samples(path: str | Path) -> VectorSampleSet:
    """
    Ambient field table (x y z bx by bz). Loaded once per process per path
    and shared read-only.
    """
    return _load_cached(str(Path(path).resolve()))


def load_dynode_samples(path: str | Path) -> VectorSampleSet:
    """Dynode orientation table (x y z dirx diry dirz), same format and cache."""
    return _load_cached(str(Path(path).resolve()))


def clear_cache() -> None:
    _load_cached.cache_clear()


def resolve_data_file(name: str, search_dirs: Iterable[str | Path]) -> Optional[Path]:
    """
    First existing candidate for a data file name. Absolute names are used as-is.
    """
    p = Path(name)
    if p.is_absolute():
        return p if p.is_file() else None
    for d in search_dirs:
        cand = Path(d) / p
        if cand.is_file():
            return cand
    return None
