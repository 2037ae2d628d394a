# src/buttongeo/placement/backend.py
from __future__ import annotations
from dataclasses import dataclass, field
import logging
from typing import Dict, List, Optional, Protocol, Tuple

import numpy as np

from buttongeo.io.params import ParameterStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PlacedUnit:
    """
    One instantiated unit.

    position, direction: (3,) global frame [mm], unit direction
    angle_y, angle_x: rotation pair (apply Y then X) that points local +z along direction
    efficiency_correction: per-array efficiency multiplier, None when unset
    """
    id: int
    array: str
    position: np.ndarray
    direction: np.ndarray
    angle_y: float
    angle_x: float
    type: int = -1
    model: str = ""
    sensitive_detector: Optional[str] = None
    efficiency_correction: Optional[float] = None
    accessories: List[Tuple[str, np.ndarray]] = field(default_factory=list)


@dataclass(slots=True)
class EfficiencyRecord:
    id: int
    value: float


class GeometryBackend(Protocol):
    """The pieces of the geometry toolkit the placement engine talks to."""

    def parent_offset(self, volume: str) -> np.ndarray:
        """Summed frame translation from volume up to the world. Raises LookupError if unknown."""

    def place_unit(self, unit: PlacedUnit) -> None:
        ...


class OpticalResponseRegistry(Protocol):
    def set_efficiency_corrections(self, array: str, records: List[EfficiencyRecord]) -> None:
        ...


class InMemoryBackend:
    """
    Backend that resolves volumes from GEO tables (mother / position keys)
    and records every placement. Also acts as the optical-response registry.
    """

    def __init__(self, store: ParameterStore, world: str = "world"):
        self.store = store
        self.world = world
        self.placed: List[PlacedUnit] = []
        self.corrections: Dict[str, List[EfficiencyRecord]] = {}

    def _translation(self, name: str) -> np.ndarray:
        link = self.store.link("GEO", name)
        if link.has("position"):
            return link.get_array("position")
        return np.zeros(3)

    def parent_offset(self, volume: str) -> np.ndarray:
        if not self.store.has("GEO", volume) and volume != self.world:
            raise LookupError(f"Unable to find mother volume {volume!r}")
        offset = np.zeros(3)
        name = volume
        seen = set()
        while name and name != self.world:
            if name in seen:
                raise LookupError(f"Volume chain loops at {name!r}")
            seen.add(name)
            if not self.store.has("GEO", name):
                raise LookupError(f"Unable to find parent volume {name!r}")
            offset += self._translation(name)
            name = self.store.link("GEO", name).get("mother", "")
        return offset

    def place_unit(self, unit: PlacedUnit) -> None:
        self.placed.append(unit)

    def set_efficiency_corrections(self, array: str, records: List[EfficiencyRecord]) -> None:
        logger.debug("[backend] %d efficiency corrections for %s", len(records), array)
        self.corrections.setdefault(array, []).extend(records)
