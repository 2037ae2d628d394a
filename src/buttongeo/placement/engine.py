# src/buttongeo/placement/engine.py
from __future__ import annotations
from dataclasses import dataclass, field
import logging
import math
from typing import TYPE_CHECKING, List, Optional, Tuple

import numpy as np

from buttongeo.config.schemas import ArrayPlacementCfg
from buttongeo.geometry.layout import UnitTable
from buttongeo.placement.backend import GeometryBackend, OpticalResponseRegistry, PlacedUnit

if TYPE_CHECKING:
    from buttongeo.physics.bfield import FieldCorrectionAssigner

logger = logging.getLogger(__name__)

# Accessory offsets along the unit direction [mm]
ACRYLIC_FLANGE_OFFSET = -102.0
ENCAPSULATION_OFFSETS = (
    ("front_encapsulation", ACRYLIC_FLANGE_OFFSET + 8.0),
    ("rear_encapsulation", ACRYLIC_FLANGE_OFFSET - 8.0),
    ("encapsulation_inner_front", ACRYLIC_FLANGE_OFFSET + 8.0),
    ("encapsulation_inner_rear", ACRYLIC_FLANGE_OFFSET - 8.0),
    ("acrylic_flange", ACRYLIC_FLANGE_OFFSET),
    ("front_metal_flange", ACRYLIC_FLANGE_OFFSET + 12.0),
    ("rear_metal_flange", ACRYLIC_FLANGE_OFFSET - 12.0),
)
LIGHT_CONE_OFFSET = 95.0


@dataclass
class PlacementState:
    """
    Running unit count shared by successive place_array calls of one build,
    plus everything placed so far. Ids are count + local offset, so arrays
    never collide.
    """
    count: int = 0
    units: List[PlacedUnit] = field(default_factory=list)

    def advance(self, placed: List[PlacedUnit]) -> None:
        self.units.extend(placed)
        self.count += len(placed)


def _unit(v: np.ndarray) -> np.ndarray:
    n = np.linalg.norm(v)
    if n == 0:
        raise ValueError("Zero-length vector")
    return v / n


def pointing_angles(direction: np.ndarray) -> Tuple[float, float]:
    """
    (angle_y, angle_x) such that rotating local +z by Y(angle_y) then X(angle_x)
    (inverse frame rotation) lands on direction.
    """
    dx, dy, dz = (float(c) for c in direction)
    angle_y = -math.atan2(dx, dz)
    angle_x = math.atan2(dy, math.hypot(dx, dz))
    return angle_y, angle_x


def direction_from_angles(angle_y: float, angle_x: float) -> np.ndarray:
    """Inverse of pointing_angles for unit vectors."""
    return np.array([
        -math.sin(angle_y) * math.cos(angle_x),
        math.sin(angle_x),
        math.cos(angle_y) * math.cos(angle_x),
    ])


def index_range(cfg: ArrayPlacementCfg, n: int) -> Tuple[int, int]:
    """Inclusive [start, end] for the array; defaults to the whole table."""
    start = 0 if cfg.start_idx is None else cfg.start_idx
    end = n - 1 if cfg.end_idx is None else cfg.end_idx
    if start < 0 or end >= n or start > end + 1:
        raise ValueError(
            f"{cfg.name}: index range [{start}, {end}] does not fit position table "
            f"{cfg.pos_table!r} of length {n}"
        )
    return start, end


def unit_pose(
    position: np.ndarray,
    stored_direction: np.ndarray,
    cfg: ArrayPlacementCfg,
    offset: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """Global position and unit direction for one stored record."""
    pos = np.asarray(position, dtype=np.float64).copy()
    if not cfg.use_parent_coordinates:
        pos = pos + offset
    if cfg.rescale_radius is not None:
        mag = np.linalg.norm(pos)
        if mag > 0:
            pos = pos * (cfg.rescale_radius / mag)

    if cfg.orientation == "manual":
        direction = np.asarray(stored_direction, dtype=np.float64)
    else:
        direction = np.asarray(cfg.orient_point, dtype=np.float64) - pos
    direction = _unit(direction)
    if cfg.flip:
        direction = -direction
    return pos, direction


def accessory_placements(
    position: np.ndarray,
    direction: np.ndarray,
    cfg: ArrayPlacementCfg,
) -> List[Tuple[str, np.ndarray]]:
    """Positions of the optional shield, encapsulation and light cone around one unit."""
    out = []
    if cfg.mu_metal:
        out.append(("mumetal", position.copy()))
    if cfg.encapsulation:
        for name, dz in ENCAPSULATION_OFFSETS:
            out.append((name, position + dz * direction))
    if cfg.light_cone:
        out.append(("light_cone", position + LIGHT_CONE_OFFSET * direction))
    return out


def place_array(
    table: UnitTable,
    cfg: ArrayPlacementCfg,
    backend: GeometryBackend,
    state: PlacementState,
    assigner: Optional["FieldCorrectionAssigner"] = None,
    registry: Optional[OpticalResponseRegistry] = None,
) -> List[PlacedUnit]:
    """
    Place units [start_idx, end_idx] of table for one configured array.

    Each unit is handed to backend.place_unit; state.count advances by the
    number placed. When assigner is ready, the array's efficiency corrections
    are handed to registry (default: backend) in one batch.

    Raises LookupError for an unknown mother volume and ValueError for an
    unusable index range or direction.
    """
    start, end = index_range(cfg, len(table))
    offset = np.asarray(backend.parent_offset(cfg.mother), dtype=np.float64)
    if cfg.use_parent_coordinates:
        logger.debug("[placement] %s: using parent coordinates", cfg.name)
    else:
        logger.debug("[placement] %s: offset %s from %s", cfg.name, offset, cfg.mother)

    sub = table.slice(start, end)
    if cfg.orientation == "manual" and sub.has_unresolved_directions():
        raise ValueError(
            f"{cfg.name}: position table {cfg.pos_table!r} has no stored directions; "
            f"use orientation = 'point'"
        )

    placed: List[PlacedUnit] = []
    for local in range(len(sub)):
        stored_pos, stored_dir, type_tag = sub[local]
        pos, direction = unit_pose(stored_pos, stored_dir, cfg, offset)
        angle_y, angle_x = pointing_angles(direction)
        unit = PlacedUnit(
            id=state.count + local,
            array=cfg.name,
            position=pos,
            direction=direction,
            angle_y=angle_y,
            angle_x=angle_x,
            type=type_tag,
            model=cfg.pmt_model,
            sensitive_detector=cfg.sensitive_detector,
            efficiency_correction=cfg.efficiency_correction,
            accessories=accessory_placements(pos, direction, cfg),
        )
        backend.place_unit(unit)
        placed.append(unit)

    state.advance(placed)
    logger.info("[placement] %s: placed %d units (ids %d..%d)",
                cfg.name, len(placed), state.count - len(placed), state.count - 1)

    if assigner is not None and assigner.ready:
        records = assigner.assign(placed)
        (registry or backend).set_efficiency_corrections(cfg.name, records)
    return placed
