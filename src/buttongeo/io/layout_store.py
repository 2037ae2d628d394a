from __future__ import annotations
from dataclasses import asdict
from typing import Dict, List, Sequence
import h5py
import numpy as np
from datetime import datetime, timezone
from pathlib import Path

from buttongeo.geometry.layout import ArrayLayout, DetectorLayout, UnitTable
from buttongeo.placement.backend import EfficiencyRecord, PlacedUnit

FORMAT_VERSION = "1.0"

_AXES = ("x", "y", "z")
_DIRS = ("dir_x", "dir_y", "dir_z")


def write_init(path: str | Path, config_text: str = "") -> h5py.File:
    f = h5py.File(str(path), "w")
    # Root attrs
    f.attrs["format_version"] = FORMAT_VERSION
    f.attrs["created_utc"] = datetime.now(timezone.utc).isoformat()
    f.attrs["software"] = "buttongeo 0.1.0"
    f.attrs["config_text"] = config_text
    return f


def _replace(grp: h5py.Group, name: str, data: np.ndarray, **kw) -> None:
    if name in grp:
        del grp[name]
    if data.size:
        kw.setdefault("compression", "gzip")
    grp.create_dataset(name, data=data, **kw)


def _write_table(grp: h5py.Group, table: UnitTable, with_types: bool = True) -> None:
    for k, key in enumerate(_AXES):
        _replace(grp, key, table.positions[:, k].astype(np.float64))
    for k, key in enumerate(_DIRS):
        _replace(grp, key, table.directions[:, k].astype(np.float64))
    if with_types:
        _replace(grp, "type", table.types.astype(np.int32))


def _write_array_attrs(grp: h5py.Group, arr: ArrayLayout, start: int, end: int) -> None:
    attrs = asdict(arr)
    caps = np.asarray(attrs.pop("cap_points"), dtype=np.int32).reshape(-1, 2)
    for key, value in attrs.items():
        grp.attrs[key] = value
    grp.attrs["n_cap_points"] = len(caps)
    grp.attrs["num_units"] = arr.num_units
    grp.attrs["start"] = start
    grp.attrs["end"] = end
    _replace(grp, "cap_points", caps)


def write_layout(f: h5py.File, layout: DetectorLayout) -> None:
    """
    Store the generated layout under /layout:

      /layout/units/{x,y,z,dir_x,dir_y,dir_z,type}
      /layout/cables/{x,y,z,dir_x,dir_y,dir_z}
      /layout/arrays/{inner,veto}  (ArrayLayout as attrs, cap_points dataset)
    """
    grp = f.require_group("layout")
    grp.attrs["unit_area"] = layout.unit_area
    _write_table(grp.require_group("units"), layout.units)
    _write_table(grp.require_group("cables"), layout.cables, with_types=False)
    arrays = grp.require_group("arrays")
    _write_array_attrs(arrays.require_group("inner"), layout.inner, *layout.inner_range)
    _write_array_attrs(arrays.require_group("veto"), layout.veto, *layout.veto_range)


def write_placements(f: h5py.File, array: str, placed: Sequence[PlacedUnit]) -> None:
    """
    Per-array poses under /placement/<array>:
      id (N,) uint32, position (N,3), direction (N,3), angle_y/angle_x (N,), type (N,)
    """
    grp = f.require_group("placement").require_group(array)
    n = len(placed)
    _replace(grp, "id", np.array([u.id for u in placed], dtype=np.uint32))
    _replace(grp, "position", np.array([u.position for u in placed], dtype=np.float64).reshape(n, 3))
    _replace(grp, "direction", np.array([u.direction for u in placed], dtype=np.float64).reshape(n, 3))
    _replace(grp, "angle_y", np.array([u.angle_y for u in placed], dtype=np.float64))
    _replace(grp, "angle_x", np.array([u.angle_x for u in placed], dtype=np.float64))
    _replace(grp, "type", np.array([u.type for u in placed], dtype=np.int32))
    if placed:
        first = placed[0]
        grp.attrs["model"] = first.model
        if first.sensitive_detector is not None:
            grp.attrs["sensitive_detector"] = first.sensitive_detector
        if first.efficiency_correction is not None:
            grp.attrs["efficiency_correction"] = first.efficiency_correction


def write_corrections(f: h5py.File, array: str, records: Sequence[EfficiencyRecord]) -> None:
    grp = f.require_group("corrections").require_group(array)
    _replace(grp, "id", np.array([r.id for r in records], dtype=np.uint32))
    _replace(grp, "value", np.array([r.value for r in records], dtype=np.float64))


def read_unit_table(path: str | Path, group: str = "/layout/units") -> UnitTable:
    with h5py.File(str(path), "r") as f:
        if group not in f:
            raise KeyError(f"{group} not found in {path}")
        g = f[group]
        pos = np.column_stack([np.asarray(g[k]) for k in _AXES])
        dirs = np.column_stack([np.asarray(g[k]) for k in _DIRS])
        types = np.asarray(g["type"]) if "type" in g else np.full(len(pos), -1)
    return UnitTable(pos, dirs, types)


def read_corrections(path: str | Path) -> Dict[str, List[EfficiencyRecord]]:
    out: Dict[str, List[EfficiencyRecord]] = {}
    with h5py.File(str(path), "r") as f:
        if "corrections" not in f:
            return out
        for array, g in f["corrections"].items():
            ids = np.asarray(g["id"])
            vals = np.asarray(g["value"])
            out[array] = [EfficiencyRecord(int(i), float(v)) for i, v in zip(ids, vals)]
    return out
