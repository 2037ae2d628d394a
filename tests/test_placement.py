import numpy as np
import pytest
from pydantic import ValidationError

from buttongeo.config.schemas import ArrayPlacementCfg
from buttongeo.geometry.layout import UnitTable
from buttongeo.io.params import ParameterStore
from buttongeo.placement.backend import InMemoryBackend
from buttongeo.placement.engine import (
    LIGHT_CONE_OFFSET,
    PlacementState,
    direction_from_angles,
    index_range,
    place_array,
    pointing_angles,
    unit_pose,
)


def _store():
    return ParameterStore.from_mapping({
        "GEO": {
            "hall": {"mother": "world", "position": [0.0, 0.0, -50.0]},
            "water": {"mother": "hall", "position": [10.0, 0.0, 0.0]},
            "loop_a": {"mother": "loop_b"},
            "loop_b": {"mother": "loop_a"},
        }
    })


def _table():
    pos = [[100.0, 0.0, 0.0], [0.0, 100.0, 0.0], [0.0, 0.0, 100.0]]
    dirs = [[-1.0, 0.0, 0.0], [0.0, -1.0, 0.0], [0.0, 0.0, 1.0]]
    return UnitTable(pos, dirs, [1, 1, 2])


def _cfg(**kw):
    base = dict(name="arr", mother="water", pmt_model="r7081",
                orientation="manual", use_parent_coordinates=True, encapsulation=False)
    base.update(kw)
    return ArrayPlacementCfg(**base)


def test_angles_roundtrip():
    rng = np.random.default_rng(3)
    for v in rng.normal(size=(20, 3)):
        d = v / np.linalg.norm(v)
        ay, ax = pointing_angles(d)
        assert np.allclose(direction_from_angles(ay, ax), d)
    assert pointing_angles(np.array([0.0, 0.0, 1.0])) == (pytest.approx(0.0), pytest.approx(0.0))


def test_manual_pose_in_parent_coordinates():
    backend = InMemoryBackend(_store())
    placed = place_array(_table(), _cfg(), backend, PlacementState())
    assert [u.id for u in placed] == [0, 1, 2]
    assert placed[0].position.tolist() == [100.0, 0.0, 0.0]
    assert placed[0].direction.tolist() == [-1.0, 0.0, 0.0]
    assert placed[2].type == 2
    assert backend.placed == placed


def test_flip_reverses_direction():
    placed = place_array(_table(), _cfg(flip=True), InMemoryBackend(_store()), PlacementState())
    assert placed[2].direction.tolist() == [0.0, 0.0, -1.0]
    assert np.allclose(direction_from_angles(placed[2].angle_y, placed[2].angle_x), [0.0, 0.0, -1.0])


def test_parent_offset_added():
    backend = InMemoryBackend(_store())
    assert backend.parent_offset("water").tolist() == [10.0, 0.0, -50.0]
    assert backend.parent_offset("world").tolist() == [0.0, 0.0, 0.0]
    placed = place_array(_table(), _cfg(use_parent_coordinates=False), backend, PlacementState())
    assert placed[0].position.tolist() == [110.0, 0.0, -50.0]


def test_unknown_or_looping_mother_raises():
    backend = InMemoryBackend(_store())
    with pytest.raises(LookupError):
        place_array(_table(), _cfg(mother="nowhere"), backend, PlacementState())
    with pytest.raises(LookupError):
        backend.parent_offset("loop_a")
    assert backend.placed == []


def test_point_orientation_and_rescale():
    cfg = _cfg(orientation="point", orient_point=[0.0, 0.0, 0.0], rescale_radius=50.0)
    pos, direction = unit_pose(np.array([100.0, 0.0, 0.0]), np.full(3, 9999.0), cfg, np.zeros(3))
    assert pos.tolist() == pytest.approx([50.0, 0.0, 0.0])
    assert direction.tolist() == pytest.approx([-1.0, 0.0, 0.0])


def test_point_orientation_on_target_raises():
    cfg = _cfg(orientation="point", orient_point=[100.0, 0.0, 0.0])
    with pytest.raises(ValueError):
        unit_pose(np.array([100.0, 0.0, 0.0]), np.zeros(3), cfg, np.zeros(3))


def test_ids_continue_across_arrays():
    backend = InMemoryBackend(_store())
    state = PlacementState()
    table = _table()
    a = place_array(table, _cfg(name="a", start_idx=0, end_idx=1), backend, state)
    b = place_array(table, _cfg(name="b", start_idx=2, end_idx=2), backend, state)
    assert [u.id for u in a] == [0, 1]
    assert [u.id for u in b] == [2]
    assert state.count == 3 and len(state.units) == 3


def test_index_range():
    assert index_range(_cfg(), 3) == (0, 2)
    assert index_range(_cfg(start_idx=3, end_idx=2), 3) == (3, 2)
    with pytest.raises(ValueError):
        index_range(_cfg(start_idx=0, end_idx=3), 3)
    with pytest.raises(ValueError):
        index_range(_cfg(start_idx=-1), 3)


def test_config_validation():
    with pytest.raises(ValidationError):
        _cfg(orientation="sideways")
    with pytest.raises(ValidationError):
        _cfg(orientation="point", orient_point=[0.0, 0.0])
    with pytest.raises(ValidationError):
        _cfg(orientation="point")
    cfg = ArrayPlacementCfg(name="arr", mother="water", pmt_model="r7081", orient_point=[0, 0, 0])
    assert cfg.orientation == "point" and cfg.encapsulation


def test_manual_without_stored_directions_raises():
    table = UnitTable([[1.0, 0.0, 0.0]], [[9999.0] * 3], [-1])
    with pytest.raises(ValueError):
        place_array(table, _cfg(), InMemoryBackend(_store()), PlacementState())
    placed = place_array(table, _cfg(orientation="point", orient_point=[0.0, 0.0, 0.0]),
                         InMemoryBackend(_store()), PlacementState())
    assert placed[0].direction.tolist() == pytest.approx([-1.0, 0.0, 0.0])


def test_accessories_follow_direction():
    cfg = _cfg(encapsulation=True, light_cone=True, mu_metal=True)
    placed = place_array(_table(), cfg, InMemoryBackend(_store()), PlacementState())
    acc = dict(placed[2].accessories)
    assert acc["mumetal"].tolist() == [0.0, 0.0, 100.0]
    assert acc["light_cone"].tolist() == pytest.approx([0.0, 0.0, 100.0 + LIGHT_CONE_OFFSET])
    assert acc["acrylic_flange"].tolist() == pytest.approx([0.0, 0.0, -2.0])
    assert acc["front_encapsulation"][2] - acc["rear_encapsulation"][2] == pytest.approx(16.0)


def test_from_store_reads_geo_table():
    store = _store()
    store.set("GEO", "arr", "mother", "water")
    store.set("GEO", "arr", "pmt_model", "r7081")
    store.set("GEO", "arr", "orientation", "manual")
    store.set("GEO", "arr", "flip", 1)
    store.set("GEO", "arr", "black_sheet_offset", 300.0)
    cfg = ArrayPlacementCfg.from_store(store, "arr")
    assert cfg.name == "arr" and cfg.flip and cfg.pos_table == "PMTINFO"
    assert "black_sheet_offset" not in cfg.model_dump()


def test_array_options_reach_backend():
    cfg = _cfg(efficiency_correction=0.93, sensitive_detector="/mydet/pmt/inner")
    backend = InMemoryBackend(_store())
    place_array(_table(), cfg, backend, PlacementState())
    assert all(u.efficiency_correction == 0.93 for u in backend.placed)
    assert all(u.sensitive_detector == "/mydet/pmt/inner" for u in backend.placed)

    plain = place_array(_table(), _cfg(), InMemoryBackend(_store()), PlacementState())
    assert plain[0].efficiency_correction is None and plain[0].sensitive_detector is None
