# src/buttongeo/geometry/derive.py
"""
Derived detector dimensions and the dependent enclosure geometry.

All lengths in mm. The derived lengths feed the coverage layout; the same
lengths are written back into the GEO tables of the tarps, frames, trusses,
rock and tank so those volumes follow the sensor envelope.
"""
from __future__ import annotations
from dataclasses import dataclass
import logging
import math
from typing import List, Sequence, Tuple

import numpy as np

from buttongeo.io.params import ParameterStore

logger = logging.getLogger(__name__)

# Standoff between the inner sensor surface and the veto surface
VETO_OFFSET = 700.0

# Cap framework / truss placement relative to the sensor end caps
CAP_FRAME_GAP = 200.0
TRUSS_HALF_THICKNESS = 2.5
SHEET_THICKNESS = 10.0
TANK_SHEET_INSET = 35.0
TANK_SHEET_TOP_INSET = 30.0
ROD_INNER_GAP = 200.0
ROD_OUTER_GAP = 300.0
TRUSS_INNER_GAP = 5.0

N_STANDOFF_FRAMES = 5


def photocathode_radius(rho_edge: Sequence[float]) -> float:
    """Largest radial edge of the photocathode profile."""
    rho = np.asarray(rho_edge, dtype=np.float64)
    if rho.size == 0:
        raise ValueError("rho_edge profile is empty; cannot derive photocathode radius")
    return float(rho.max())


@dataclass(frozen=True)
class DetectorGeometryParameters:
    """
    Scalar inputs of one generation pass plus the lengths derived from them.
    """
    photocathode_coverage: float
    veto_coverage: float
    pmt_model: str
    photocathode_radius: float

    steel_thickness: float
    veto_thickness_r: float
    veto_thickness_z: float
    detector_size_d: float
    detector_size_z: float
    black_sheet_offset: float
    black_sheet_thickness: float

    @property
    def photocathode_area(self) -> float:
        return math.pi * self.photocathode_radius ** 2

    @property
    def pmt_radius(self) -> float:
        return self.detector_size_d / 2.0 - self.veto_thickness_r - 4.0 * self.steel_thickness

    @property
    def cable_radius(self) -> float:
        return self.detector_size_d / 2.0 - self.veto_thickness_r + 4.0 * self.steel_thickness

    @property
    def veto_radius(self) -> float:
        return self.pmt_radius + VETO_OFFSET

    @property
    def half_height(self) -> float:
        return self.detector_size_z / 2.0 - self.veto_thickness_z

    @property
    def veto_half_height(self) -> float:
        return self.half_height + VETO_OFFSET


def derive_geometry(store: ParameterStore) -> DetectorGeometryParameters:
    """
    Read the base parameters from the store. Missing required keys raise
    ParameterNotFoundError.
    """
    params = store.link("BUTTON_PARAMS")
    inner = store.link("GEO", "inner_pmts")
    shield = store.link("GEO", "shield")

    pmt_model = inner.get_str("pmt_model")
    rho_edge = store.link("PMT", pmt_model).get_array("rho_edge")

    geo = DetectorGeometryParameters(
        photocathode_coverage=params.get_scalar("photocathode_coverage"),
        veto_coverage=params.get_scalar("veto_coverage"),
        pmt_model=pmt_model,
        photocathode_radius=photocathode_radius(rho_edge),
        steel_thickness=shield.get_scalar("steel_thickness"),
        veto_thickness_r=shield.get_scalar("veto_thickness_r"),
        veto_thickness_z=shield.get_scalar("veto_thickness_z"),
        detector_size_d=shield.get_scalar("detector_size_d"),
        detector_size_z=shield.get_scalar("detector_size_z"),
        black_sheet_offset=inner.get_scalar("black_sheet_offset"),
        black_sheet_thickness=inner.get_scalar("black_sheet_thickness"),
    )
    logger.debug(
        "[derive] pmt_radius=%.1f veto_radius=%.1f half_height=%.1f veto_half_height=%.1f",
        geo.pmt_radius, geo.veto_radius, geo.half_height, geo.veto_half_height,
    )
    return geo


def _z(z: float) -> List[float]:
    return [0.0, 0.0, float(z)]


def enclosure_updates(geo: DetectorGeometryParameters) -> List[Tuple[str, str, object]]:
    """
    (index, key, value) updates for GEO tables that depend only on geo.

    Pure function; the order of the returned updates carries no meaning.
    """
    r = geo.pmt_radius
    h = geo.half_height
    tank_r = geo.detector_size_d / 2.0
    tank_h = geo.detector_size_z / 2.0
    black_r = r + geo.black_sheet_offset
    black_h = h + geo.black_sheet_offset
    truss_z = h + CAP_FRAME_GAP + TRUSS_HALF_THICKNESS

    return [
        # side tarps
        ("white_sheet_side", "r_max", geo.veto_radius),
        ("white_sheet_side", "r_min", geo.veto_radius - SHEET_THICKNESS),
        ("white_sheet_side", "size_z", geo.veto_half_height),
        ("black_sheet_side", "r_max", black_r + geo.black_sheet_thickness),
        ("black_sheet_side", "r_min", black_r),
        ("black_sheet_side", "size_z", black_h),
        ("Rod_assemblies", "r_max", r + ROD_OUTER_GAP),
        ("Rod_assemblies", "r_min", r + ROD_INNER_GAP),
        ("Rod_assemblies", "size_z", h),
        ("white_sheet_tank_side", "r_max", tank_r - SHEET_THICKNESS),
        ("white_sheet_tank_side", "r_min", tank_r - TANK_SHEET_INSET),
        ("white_sheet_tank_side", "size_z", tank_h - TANK_SHEET_INSET),
        # top
        ("white_sheet_top", "r_max", geo.veto_radius),
        ("white_sheet_top", "position", _z(geo.veto_half_height)),
        ("black_sheet_top", "r_max", black_r),
        ("black_sheet_top", "position", _z(black_h)),
        ("Top_cap_framework", "r_max", r),
        ("Top_cap_framework", "position", _z(h + CAP_FRAME_GAP)),
        ("Wall_support_truss_top", "r_min", r + TRUSS_INNER_GAP),
        ("Wall_support_truss_top", "r_max", r + CAP_FRAME_GAP),
        ("Wall_support_truss_top", "position", _z(truss_z)),
        ("white_sheet_tank_top", "r_max", tank_r - TANK_SHEET_INSET),
        ("white_sheet_tank_top", "position", _z(tank_h - TANK_SHEET_TOP_INSET)),
        # bottom
        ("white_sheet_bottom", "r_max", geo.veto_radius),
        ("white_sheet_bottom", "position", _z(-geo.veto_half_height)),
        ("black_sheet_bottom", "r_max", black_r),
        ("black_sheet_bottom", "position", _z(-black_h)),
        ("Bottom_cap_framework", "r_max", r),
        ("Bottom_cap_framework", "position", _z(-h - CAP_FRAME_GAP)),
        ("Wall_support_truss_bottom", "r_min", r + TRUSS_INNER_GAP),
        ("Wall_support_truss_bottom", "r_max", r + CAP_FRAME_GAP),
        ("Wall_support_truss_bottom", "position", _z(-truss_z)),
        ("white_sheet_tank_bottom", "r_max", tank_r - TANK_SHEET_INSET),
        ("white_sheet_tank_bottom", "position", _z(-tank_h + TANK_SHEET_TOP_INSET)),
        # tank
        ("tank", "r_max", tank_r),
        ("tank", "size_z", tank_h),
    ]


def _adjust_standoff_frames(store: ParameterStore, geo: DetectorGeometryParameters) -> List[str]:
    """Stretch the bottom-cap standoff frames to fill the gap under the truss."""
    truss_z = geo.half_height + CAP_FRAME_GAP + TRUSS_HALF_THICKNESS
    tank_h = geo.detector_size_z / 2.0
    gap = tank_h - truss_z

    touched = []
    for k in range(N_STANDOFF_FRAMES):
        name = f"Bottom_cap_standoff_frame_{k}"
        if not store.has("GEO", name):
            continue
        frame = store.link("GEO", name)
        size = frame.get_array("size").copy()
        pos = frame.get_array("position").copy()
        if size[2] != gap:
            size[2] = gap / 2.0
            pos[2] = -(tank_h + truss_z) / 2.0
            logger.debug("[derive] %s new size %s", name, size)
        frame.set("size", size)
        frame.set("position", pos)
        touched.append(name)
    return touched


def apply_enclosure_updates(store: ParameterStore, geo: DetectorGeometryParameters) -> List[Tuple[str, str]]:
    """
    Write every derived enclosure dimension back into the store.

    Runs independently of the unit layout. Emits a warning (and changes
    nothing else) when the tank is taller than the cavern.

    Returns the (table, index) pairs that were written.
    """
    logger.info("[derive] Updating tarp, frame and tank geometry")
    touched = set()
    for index, key, value in enclosure_updates(geo):
        store.set("GEO", index, key, value)
        touched.add(("GEO", index))

    for name in _adjust_standoff_frames(store, geo):
        touched.add(("GEO", name))

    cavern_half_z = store.link("GEO", "cavern").get_scalar("size_z")
    shift = cavern_half_z - geo.detector_size_z / 2.0
    if shift < 0.0:
        logger.warning(
            "[derive] size of detector greater than cavern (%.1f mm, %.1f mm)",
            geo.detector_size_z, 2.0 * cavern_half_z,
        )
    logger.info("[derive] Rock and cavern air shifted by %.1f mm", shift)
    store.set("GEO", "rock_1", "position", _z(shift))
    store.set("GEO", "tank", "position", _z(-shift))
    touched.update({("GEO", "rock_1"), ("GEO", "tank")})
    return sorted(touched)
