# src/buttongeo/geometry/layout.py
"""
Coverage-driven sensor layout on a cylinder.

Given a target photocathode coverage, each array (inner sensors, outer veto)
gets a unit count, a spacing, a side-wall grid and an end-cap lattice. The
combined table keeps inner units at [0, num_inner-1] and veto units right
after them. Within an array, side-wall units come first (column outer loop,
row inner loop), then end-cap (top, bottom) pairs in lattice-scan order.
"""
from __future__ import annotations
from dataclasses import dataclass
import logging
import math
from typing import List, Literal, Optional, Tuple

import numpy as np

from buttongeo.geometry.derive import DetectorGeometryParameters
from buttongeo.io.params import ParameterStore

logger = logging.getLogger(__name__)

INNER_TYPE = 1
VETO_TYPE = 2

ArrayKind = Literal["inner", "veto"]


def round_half_away(x: float) -> int:
    """Round to nearest integer, halves away from zero (not banker's rounding)."""
    return int(math.floor(abs(x) + 0.5)) * (1 if x >= 0 else -1)


def cylinder_area(radius: float, half_height: float) -> float:
    """Side wall plus both end caps of a closed cylinder."""
    return 2.0 * math.pi * radius * radius + 2.0 * half_height * 2.0 * math.pi * radius


def required_unit_count(coverage: float, area: float, unit_area: float) -> int:
    """
    Smallest n with n * unit_area >= coverage * area.

    Non-positive coverage or area gives an empty array.
    """
    if coverage <= 0.0 or area <= 0.0:
        return 0
    if unit_area <= 0.0:
        raise ValueError(f"unit_area must be positive, got {unit_area}")
    return int(math.ceil(coverage * area / unit_area))


@dataclass(frozen=True)
class ArrayLayout:
    kind: ArrayKind
    radius: float
    half_height: float
    area: float
    required: int
    spacing: float      # nan when the array is empty
    cols: int
    rows: int
    cap_points: Tuple[Tuple[int, int], ...] = ()

    @property
    def is_empty(self) -> bool:
        return self.required == 0

    @property
    def n_side(self) -> int:
        return self.cols * self.rows

    @property
    def num_units(self) -> int:
        return self.n_side + 2 * len(self.cap_points)

    def with_caps(self, cap_points) -> "ArrayLayout":
        return ArrayLayout(
            self.kind, self.radius, self.half_height, self.area, self.required,
            self.spacing, self.cols, self.rows, tuple(cap_points),
        )


def plan_array(
    kind: ArrayKind,
    coverage: float,
    radius: float,
    half_height: float,
    unit_area: float,
) -> ArrayLayout:
    """Unit count, spacing and side-wall grid for one array (end caps not yet filled)."""
    area = cylinder_area(radius, half_height)
    required = required_unit_count(coverage, area, unit_area)
    if required == 0:
        return ArrayLayout(kind, radius, half_height, area, 0, float("nan"), 0, 0)

    spacing = math.sqrt(area / required)
    cols = round_half_away(2.0 * math.pi * radius / spacing)
    rows = round_half_away(2.0 * half_height / spacing)
    return ArrayLayout(kind, radius, half_height, area, required, spacing, cols, rows)


def endcap_lattice(rdim: int, spacing: float, bound: float) -> List[Tuple[int, int]]:
    """
    Integer offsets (i, j) in [-rdim, rdim]^2 with spacing*|(i, j)| <= bound,
    i outer loop, j inner loop.
    """
    kept = []
    for i in range(-rdim, rdim + 1):
        for j in range(-rdim, rdim + 1):
            if spacing * math.sqrt(i * i + j * j) <= bound:
                kept.append((i, j))
    return kept


@dataclass
class UnitTable:
    """
    Ordered, index-addressable unit records.

    positions  : (N, 3) float
    directions : (N, 3) float (rows may hold the unresolved sentinel)
    types      : (N,) int
    """
    positions: np.ndarray
    directions: np.ndarray
    types: np.ndarray

    UNRESOLVED = 9999.0

    def __post_init__(self):
        self.positions = np.asarray(self.positions, dtype=np.float64).reshape(-1, 3)
        self.directions = np.asarray(self.directions, dtype=np.float64).reshape(-1, 3)
        self.types = np.asarray(self.types, dtype=np.int64).reshape(-1)
        n = len(self.positions)
        if len(self.directions) != n or len(self.types) != n:
            raise ValueError(
                f"UnitTable column lengths differ: positions={n}, "
                f"directions={len(self.directions)}, types={len(self.types)}"
            )

    @classmethod
    def empty(cls) -> "UnitTable":
        return cls(np.zeros((0, 3)), np.zeros((0, 3)), np.zeros(0, dtype=np.int64))

    @classmethod
    def concatenate(cls, tables: List["UnitTable"]) -> "UnitTable":
        if not tables:
            return cls.empty()
        return cls(
            np.concatenate([t.positions for t in tables]),
            np.concatenate([t.directions for t in tables]),
            np.concatenate([t.types for t in tables]),
        )

    def __len__(self) -> int:
        return len(self.positions)

    def __getitem__(self, idx: int) -> Tuple[np.ndarray, np.ndarray, int]:
        return self.positions[idx], self.directions[idx], int(self.types[idx])

    def slice(self, start: int, end: int) -> "UnitTable":
        """Records start..end inclusive."""
        return UnitTable(
            self.positions[start:end + 1],
            self.directions[start:end + 1],
            self.types[start:end + 1],
        )

    def has_unresolved_directions(self) -> bool:
        return bool(np.any(self.directions == self.UNRESOLVED))


def _side_units(
    layout: ArrayLayout,
    z_half_height: float,
    phase: float,
    outward: bool,
) -> Tuple[np.ndarray, np.ndarray]:
    """Side-wall grid; phase 0.5 centres units in their column, 0.0 puts them on column edges."""
    n = layout.n_side
    pos = np.zeros((n, 3))
    dirs = np.zeros((n, 3))
    sign = 1.0 if outward else -1.0
    for col in range(layout.cols):
        phi = 2.0 * math.pi * (col + phase) / layout.cols
        c, s = math.cos(phi), math.sin(phi)
        for row in range(layout.rows):
            idx = row + col * layout.rows
            z = row * 2.0 * z_half_height / layout.rows + layout.spacing / 2.0 - z_half_height
            pos[idx] = (layout.radius * c, layout.radius * s, z)
            dirs[idx] = (sign * c, sign * s, 0.0)
    return pos, dirs


def _cap_units(layout: ArrayLayout, z_cap: float, outward: bool) -> Tuple[np.ndarray, np.ndarray]:
    """End-cap (top, bottom) pairs at the same planar coordinates."""
    n = 2 * len(layout.cap_points)
    pos = np.zeros((n, 3))
    dirs = np.zeros((n, 3))
    top_dz = 1.0 if outward else -1.0
    for k, (i, j) in enumerate(layout.cap_points):
        x = layout.spacing * i
        y = layout.spacing * j
        pos[2 * k] = (x, y, z_cap)
        dirs[2 * k] = (0.0, 0.0, top_dz)
        pos[2 * k + 1] = (x, y, -z_cap)
        dirs[2 * k + 1] = (0.0, 0.0, -top_dz)
    return pos, dirs


def build_array_units(
    layout: ArrayLayout,
    side_half_height: float,
    cap_z: float,
) -> UnitTable:
    """
    Unit records of one array. Inner units face the axis and are centred in
    their columns; veto units face outward and sit on column edges.
    """
    if layout.is_empty:
        return UnitTable.empty()
    outward = layout.kind == "veto"
    phase = 0.0 if outward else 0.5
    side_pos, side_dir = _side_units(layout, side_half_height, phase, outward)
    cap_pos, cap_dir = _cap_units(layout, cap_z, outward)
    type_tag = VETO_TYPE if outward else INNER_TYPE
    return UnitTable(
        np.concatenate([side_pos, cap_pos]),
        np.concatenate([side_dir, cap_dir]),
        np.full(layout.num_units, type_tag, dtype=np.int64),
    )


def cable_positions(cols: int, cable_radius: float) -> UnitTable:
    """One vertical support cable per inner column, on column edges."""
    pos = np.zeros((cols, 3))
    for col in range(cols):
        phi = col * 2.0 * math.pi / cols
        pos[col] = (cable_radius * math.cos(phi), cable_radius * math.sin(phi), 0.0)
    # TODO: read the cable direction from the store once a detector variant needs non-vertical cables
    dirs = np.tile([0.0, 0.0, 1.0], (cols, 1))
    return UnitTable(pos, dirs, np.zeros(cols, dtype=np.int64))


@dataclass
class DetectorLayout:
    inner: ArrayLayout
    veto: ArrayLayout
    units: UnitTable
    cables: UnitTable
    unit_area: float

    @property
    def num_inner(self) -> int:
        return self.inner.num_units

    @property
    def num_veto(self) -> int:
        return self.veto.num_units

    @property
    def total(self) -> int:
        return self.num_inner + self.num_veto

    @property
    def inner_range(self) -> Tuple[int, int]:
        return 0, self.num_inner - 1

    @property
    def veto_range(self) -> Tuple[int, int]:
        return self.num_inner, self.total - 1

    def achieved_coverage(self, kind: ArrayKind = "inner") -> float:
        arr = self.inner if kind == "inner" else self.veto
        if arr.area <= 0:
            return 0.0
        return self.unit_area * arr.num_units / arr.area


def _cap_bound(inner: ArrayLayout, veto: ArrayLayout) -> Tuple[int, float]:
    """
    Lattice half-extent and radial bound shared by both arrays' end caps.

    Both use the inner array's radius and spacing, so the veto caps stay
    inside the inner envelope. An empty inner array has no spacing, so the
    veto then falls back to its own.
    """
    ref: Optional[ArrayLayout] = inner if not inner.is_empty else (veto if not veto.is_empty else None)
    if ref is None:
        return 0, -1.0
    rdim = round_half_away(ref.radius / ref.spacing)
    return rdim, ref.radius - ref.spacing / 2.0


def generate_layout(geo: DetectorGeometryParameters) -> DetectorLayout:
    """
    Lay out the inner and veto arrays for the coverages in geo.
    """
    unit_area = geo.photocathode_area
    inner = plan_array("inner", geo.photocathode_coverage, geo.pmt_radius, geo.half_height, unit_area)
    veto = plan_array("veto", geo.veto_coverage, geo.veto_radius, geo.veto_half_height, unit_area)

    logger.info("[layout] Generating new PMT positions for:")
    logger.info("[layout]   desired photocathode coverage %g", geo.photocathode_coverage)
    logger.info("[layout]   total area %g", inner.area)
    logger.info("[layout]   photocathode radius %g", geo.photocathode_radius)
    logger.info("[layout]   photocathode area %g", unit_area)
    logger.info("[layout]   desired PMTs %d", inner.required)
    logger.info("[layout]   PMT spacing %g", inner.spacing)

    rdim, bound = _cap_bound(inner, veto)
    if not inner.is_empty:
        inner = inner.with_caps(endcap_lattice(rdim, inner.spacing, bound))
    if not veto.is_empty:
        veto = veto.with_caps(endcap_lattice(rdim, veto.spacing, bound))

    # veto side rows span the inner half-height, as the veto wall hangs from the same frame
    inner_units = build_array_units(inner, geo.half_height, geo.half_height)
    veto_units = build_array_units(veto, geo.half_height, geo.veto_half_height)
    layout = DetectorLayout(
        inner=inner,
        veto=veto,
        units=UnitTable.concatenate([inner_units, veto_units]),
        cables=cable_positions(inner.cols, geo.cable_radius),
        unit_area=unit_area,
    )

    logger.info("[layout] Actual calculated values:")
    logger.info("[layout]   actual photocathode coverage %g", layout.achieved_coverage("inner"))
    logger.info("[layout]   generated PMTs %d (cols %d, rows %d)", layout.num_inner, inner.cols, inner.rows)
    logger.info("[layout]   generated Vetos %d (cols %d, rows %d)", layout.num_veto, veto.cols, veto.rows)
    return layout


def write_layout(store: ParameterStore, layout: DetectorLayout) -> None:
    """
    Write the unit table, cable ring and array partition back into the store.
    """
    u = layout.units
    logger.info("[layout] Override default PMTINFO information")
    store.set("PMTINFO", "", "x", u.positions[:, 0])
    store.set("PMTINFO", "", "y", u.positions[:, 1])
    store.set("PMTINFO", "", "z", u.positions[:, 2])
    store.set("PMTINFO", "", "dir_x", u.directions[:, 0])
    store.set("PMTINFO", "", "dir_y", u.directions[:, 1])
    store.set("PMTINFO", "", "dir_z", u.directions[:, 2])
    store.set("PMTINFO", "", "type", u.types)

    logger.info("[layout] Update geometry fields related to veto PMTs")
    store.set("GEO", "shield", "veto_start", layout.num_inner)
    store.set("GEO", "shield", "veto_len", layout.num_veto)
    store.set("GEO", "veto_pmts", "start_idx", layout.veto_range[0])
    store.set("GEO", "veto_pmts", "end_idx", layout.veto_range[1])

    logger.info("[layout] Update geometry fields related to normal PMTs")
    store.set("GEO", "shield", "cols", layout.inner.cols)
    store.set("GEO", "shield", "rows", layout.inner.rows)
    store.set("GEO", "shield", "inner_start", 0)
    store.set("GEO", "shield", "inner_len", layout.num_inner)
    store.set("GEO", "inner_pmts", "start_idx", layout.inner_range[0])
    store.set("GEO", "inner_pmts", "end_idx", layout.inner_range[1])

    logger.info("[layout] Update cable positions to match shield")
    c = layout.cables
    store.set("cable_pos", "", "x", c.positions[:, 0])
    store.set("cable_pos", "", "y", c.positions[:, 1])
    store.set("cable_pos", "", "z", c.positions[:, 2])
    store.set("cable_pos", "", "dir_x", c.directions[:, 0])
    store.set("cable_pos", "", "dir_y", c.directions[:, 1])
    store.set("cable_pos", "", "dir_z", c.directions[:, 2])


def unit_table_from_store(store: ParameterStore, pos_table: str = "PMTINFO") -> UnitTable:
    """
    Read a persisted position table. Missing direction columns become the
    unresolved sentinel; a missing type column becomes -1.
    """
    link = store.link(pos_table)
    x, y, z = link.get_array("x"), link.get_array("y"), link.get_array("z")
    n = len(x)
    pos = np.column_stack([x, y, z])
    if all(link.has(k) for k in ("dir_x", "dir_y", "dir_z")):
        dirs = np.column_stack([link.get_array("dir_x"), link.get_array("dir_y"), link.get_array("dir_z")])
    else:
        dirs = np.full((n, 3), UnitTable.UNRESOLVED)
    types = link.get_int_array("type") if link.has("type") else np.full(n, -1, dtype=np.int64)
    return UnitTable(pos, dirs, types)
