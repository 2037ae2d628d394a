# src/buttongeo/physics/bfield.py
"""
Per-unit collection-efficiency correction from an ambient magnetic field.

For each placed unit the nearest field sample is decomposed along the unit's
dynode axis and along the axis orthogonal to both dynode and unit direction;
each component is looked up in a measured calibration sheet and the two
response deltas are combined into one multiplier.

Missing field data never blocks placement: the assigner falls back to
DISABLED with a warning.
"""
from __future__ import annotations
import logging
from pathlib import Path
from typing import Iterable, List, Literal, Optional, Protocol, Sequence

import numpy as np

from buttongeo.config.schemas import FieldCorrectionCfg
from buttongeo.io.calibration import CalibrationSheet, load_calibration_sheets
from buttongeo.io.field_tables import (
    VectorSampleSet,
    load_dynode_samples,
    load_field_samples,
    resolve_data_file,
)
from buttongeo.io.params import ParameterStore
from buttongeo.placement.backend import EfficiencyRecord, PlacedUnit

logger = logging.getLogger(__name__)

MAX_AXIS_TRIES = 100


AssignerState = Literal["disabled", "loading", "ready"]


# --- Random source ----------------------------------------------------------

class RandomSource(Protocol):
    def direction(self) -> np.ndarray:
        """Uniformly distributed unit 3-vector."""

    def index(self, n: int) -> int:
        """Uniform integer in [0, n)."""


class NumpyRandomSource:
    def __init__(self, rng: np.random.Generator | None = None):
        self.rng = rng or np.random.default_rng()

    def direction(self) -> np.ndarray:
        # normalised Gaussian triple is isotropic
        while True:
            v = self.rng.normal(size=3)
            n = np.linalg.norm(v)
            if n > 0:
                return v / n

    def index(self, n: int) -> int:
        return int(self.rng.integers(n))


# --- Geometry helpers -------------------------------------------------------

def nearest_index(points: np.ndarray, query: np.ndarray) -> Optional[int]:
    """
    Index of the point closest to query (Euclidean). Ties go to the first
    encountered; None for an empty set.
    """
    if len(points) == 0:
        return None
    d2 = np.sum((np.asarray(points, dtype=np.float64) - np.asarray(query, dtype=np.float64)) ** 2, axis=1)
    return int(np.argmin(d2))


def _normalized_rows(v: np.ndarray) -> np.ndarray:
    n = np.linalg.norm(v, axis=-1, keepdims=True)
    return np.divide(v, n, out=np.zeros_like(v, dtype=np.float64), where=n > 0)


def perp_part(v: np.ndarray, axis: np.ndarray) -> np.ndarray:
    """Component of v orthogonal to axis (axis need not be normalised)."""
    a2 = float(axis @ axis)
    if a2 == 0:
        return v.copy()
    return v - (float(v @ axis) / a2) * axis


def random_perpendicular(
    direction: np.ndarray,
    rng: RandomSource,
    max_tries: int = MAX_AXIS_TRIES,
) -> np.ndarray:
    """
    Random unit vector orthogonal to direction. Redraws while the projection
    degenerates; after max_tries the (zero) vector is returned with a warning.
    """
    axis = perp_part(rng.direction(), direction)
    tries = 0
    while np.linalg.norm(axis) == 0 and tries < max_tries:
        axis = perp_part(rng.direction(), direction)
        tries += 1
    n = np.linalg.norm(axis)
    if n == 0:
        logger.warning("[bfield] tried %d times to generate a random dynode orientation and failed", max_tries)
        return axis
    return axis / n


def combine(dx: float, dy: float, model: str, clamp: bool) -> float:
    """
    multiplicative: dx*dy; additive: dx+dy-1. With clamp, values above 1 become 1.
    """
    if model == "multiplicative":
        value = dx * dy
    elif model == "additive":
        value = dx + dy - 1.0
    else:
        raise ValueError(f"Unknown b_efficiency_model {model!r}")
    if clamp and value > 1.0:
        return 1.0
    return value


# --- Assigner ---------------------------------------------------------------

class FieldCorrectionAssigner:
    """
    DISABLED -> LOADING -> READY; per-unit assignment only in READY.

    Field samples and calibration sheets are shared read-only; callers must
    not mutate them.
    """

    def __init__(self, cfg: FieldCorrectionCfg | None = None, rng: RandomSource | None = None):
        self.cfg = cfg or FieldCorrectionCfg()
        self.rng = rng or NumpyRandomSource()
        self.state: AssignerState = "disabled"
        self.field: Optional[VectorSampleSet] = None
        self.dynodes: Optional[VectorSampleSet] = None
        self.sheets: List[CalibrationSheet] = []

    @property
    def ready(self) -> bool:
        return self.state == "ready"

    @property
    def have_dynode_data(self) -> bool:
        return self.dynodes is not None and not self.dynodes.is_empty

    @classmethod
    def from_data(
        cls,
        field: VectorSampleSet,
        sheets: Sequence[CalibrationSheet],
        cfg: FieldCorrectionCfg | None = None,
        dynodes: VectorSampleSet | None = None,
        rng: RandomSource | None = None,
    ) -> "FieldCorrectionAssigner":
        """READY assigner over already-loaded data."""
        if not sheets:
            raise ValueError("At least one calibration sheet is required")
        a = cls(cfg, rng)
        a.field = field
        a.dynodes = dynodes
        a.sheets = list(sheets)
        a.state = "ready"
        return a

    def _disable(self, reason: str) -> AssignerState:
        logger.warning("[bfield] %s; magnetic efficiency correction turned off", reason)
        self.state = "disabled"
        self.field = None
        self.dynodes = None
        self.sheets = []
        return self.state

    def load(self, store: ParameterStore, data_dirs: Iterable[str | Path] = ()) -> AssignerState:
        """
        Load field samples, calibration sheets and (optionally) dynode
        orientations. Never raises for missing files or tables.
        """
        cfg = self.cfg
        if not cfg.b_field_on:
            self.state = "disabled"
            return self.state

        self.state = "loading"
        if not cfg.b_field_file or not cfg.b_efficiency_table:
            return self._disable("B field is on, but either B data or B PMT efficiency correction missing")

        dirs = [Path(d) for d in data_dirs]
        search = [d / cfg.experiment for d in dirs] + dirs if cfg.experiment else dirs
        field_path = resolve_data_file(cfg.b_field_file, search)
        if field_path is None:
            return self._disable(f"field file {cfg.b_field_file!r} not found in {[str(d) for d in search]}")
        if not store.has(cfg.b_efficiency_table):
            return self._disable(f"efficiency table {cfg.b_efficiency_table!r} not found")

        logger.info("[bfield] about to load B field from file %s", field_path)
        try:
            self.field = load_field_samples(field_path)
        except (OSError, ValueError) as exc:
            return self._disable(f"cannot read field file {field_path}: {exc}")
        self.sheets = load_calibration_sheets(store.link(cfg.b_efficiency_table))

        self.dynodes = None
        if cfg.dynorfilename:
            dyn_dirs = [d / cfg.experiment for d in dirs] if cfg.experiment else dirs
            dyn_path = resolve_data_file(cfg.dynorfilename, dyn_dirs)
            if dyn_path is None:
                logger.warning("[bfield] failed to open %s, will assume random dynode orientations",
                               cfg.dynorfilename)
            else:
                try:
                    self.dynodes = load_dynode_samples(dyn_path)
                except (OSError, ValueError) as exc:
                    logger.warning("[bfield] failed to read %s (%s), will assume random dynode orientations",
                                   dyn_path, exc)
        if not self.have_dynode_data:
            logger.info("[bfield] No dynode orientation data, randomizing dynode orientations")

        if cfg.clamp_to_one:
            logger.info("[bfield] Forcing B efficiency <= 1")
        logger.info("[bfield] Selected %s B efficiency model, %d calibration sheet(s), %d field samples",
                    cfg.b_efficiency_model, len(self.sheets), len(self.field))
        self.state = "ready"
        return self.state

    def dynode_axis(self, position: np.ndarray, direction: np.ndarray) -> np.ndarray:
        """Measured dynode orientation nearest in direction from the origin, else a random perpendicular."""
        axis = None
        if self.have_dynode_data:
            i = nearest_index(_normalized_rows(self.dynodes.positions), _normalized_rows(position))
            axis = np.array(self.dynodes.vectors[i], dtype=np.float64)
        if axis is None or np.linalg.norm(axis) == 0:
            return random_perpendicular(direction, self.rng)
        return axis / np.linalg.norm(axis)

    def pick_sheet(self) -> CalibrationSheet:
        if len(self.sheets) > 1:
            return self.sheets[self.rng.index(len(self.sheets))]
        return self.sheets[0]

    def correction_for(self, position: np.ndarray, direction: np.ndarray) -> Optional[float]:
        """Efficiency multiplier for one unit, or None when no field sample is available."""
        if not self.ready:
            raise RuntimeError(f"FieldCorrectionAssigner is {self.state}, not ready")
        i = nearest_index(self.field.positions, position)
        if i is None:
            return None

        bfield = perp_part(np.asarray(self.field.vectors[i], dtype=np.float64), direction)
        dyn = self.dynode_axis(position, direction)
        cross = np.cross(direction, dyn)
        n = np.linalg.norm(cross)
        cross = cross / n if n > 0 else cross

        sheet = self.pick_sheet()
        dx = sheet.x.eval(abs(float(bfield @ dyn)))
        dy = sheet.y.eval(abs(float(bfield @ cross)))
        return combine(dx, dy, self.cfg.b_efficiency_model, self.cfg.clamp_to_one)

    def assign(self, placed: Sequence[PlacedUnit]) -> List[EfficiencyRecord]:
        """Corrections for one array's placed units; units without a field sample are skipped."""
        records: List[EfficiencyRecord] = []
        for unit in placed:
            value = self.correction_for(unit.position, unit.direction)
            if value is None:
                logger.warning("[bfield] can't find a point close to the %d-th pmt", unit.id)
                continue
            records.append(EfficiencyRecord(unit.id, value))
        return records
