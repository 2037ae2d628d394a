import math

import numpy as np
import pytest

from buttongeo.geometry.derive import apply_enclosure_updates
from buttongeo.geometry.layout import (
    INNER_TYPE,
    VETO_TYPE,
    UnitTable,
    cylinder_area,
    endcap_lattice,
    generate_layout,
    plan_array,
    required_unit_count,
    round_half_away,
    unit_table_from_store,
    write_layout,
)


def test_round_half_away_from_zero():
    assert round_half_away(2.5) == 3
    assert round_half_away(-2.5) == -3
    assert round_half_away(2.4999) == 2
    assert round_half_away(0.5) == 1


def test_required_count_is_smallest_covering():
    unit_area = math.pi * 100.0 ** 2
    for coverage in (0.01, 0.1, 0.33, 0.4, 0.9):
        for area in (1.0e6, 1.8e7, 5.4e7):
            n = required_unit_count(coverage, area, unit_area)
            assert n * unit_area >= coverage * area
            assert (n - 1) * unit_area < coverage * area


def test_zero_coverage_gives_empty_array():
    assert required_unit_count(0.0, 1.0e7, 1.0) == 0
    arr = plan_array("inner", 0.0, 1000.0, 1000.0, 1.0)
    assert arr.is_empty and arr.num_units == 0 and math.isnan(arr.spacing)
    with pytest.raises(ValueError):
        required_unit_count(0.1, 1.0e7, 0.0)


def test_plan_array_grid():
    unit_area = math.pi * 100.0 ** 2
    arr = plan_array("inner", 0.4, 1000.0, 1000.0, unit_area)
    assert arr.area == pytest.approx(cylinder_area(1000.0, 1000.0))
    assert arr.required * unit_area >= 0.4 * arr.area
    assert arr.spacing == pytest.approx(math.sqrt(arr.area / arr.required))
    assert arr.cols == round_half_away(2 * math.pi * 1000.0 / arr.spacing)
    assert arr.rows == round_half_away(2000.0 / arr.spacing)
    side_area = 2 * math.pi * 1000.0 * 2000.0
    assert abs(arr.n_side - side_area / arr.spacing ** 2) <= arr.cols + arr.rows


def test_endcap_lattice_bound_and_order():
    pts = endcap_lattice(3, 100.0, 250.0)
    assert (0, 0) in pts and (3, 0) not in pts and (2, 1) in pts
    assert all(100.0 * math.hypot(i, j) <= 250.0 for i, j in pts)
    assert pts == sorted(pts)   # i outer, j inner
    assert endcap_lattice(0, 100.0, -1.0) == []


def test_array_partition(geo):
    lay = generate_layout(geo)
    assert lay.num_inner > 0 and lay.num_veto > 0
    assert len(lay.units) == lay.total
    assert lay.inner_range == (0, lay.num_inner - 1)
    assert lay.veto_range == (lay.num_inner, lay.total - 1)
    assert np.all(lay.units.types[: lay.num_inner] == INNER_TYPE)
    assert np.all(lay.units.types[lay.num_inner:] == VETO_TYPE)
    assert lay.achieved_coverage("inner") > 0


def test_side_wall_ordering_and_directions(geo):
    lay = generate_layout(geo)
    inner = lay.inner
    pos = lay.units.positions
    dirs = lay.units.directions

    # first column, rows ascending
    phi0 = math.pi / inner.cols
    for row in range(inner.rows):
        assert math.atan2(pos[row, 1], pos[row, 0]) == pytest.approx(phi0)
    assert np.all(np.diff(pos[: inner.rows, 2]) > 0)
    assert pos[0, 2] == pytest.approx(inner.spacing / 2 - geo.half_height)

    # inner side units face the axis
    r = np.hypot(pos[: inner.n_side, 0], pos[: inner.n_side, 1])
    assert np.allclose(r, geo.pmt_radius)
    radial = pos[: inner.n_side, :2] / r[:, None]
    assert np.allclose(dirs[: inner.n_side, :2], -radial)
    assert np.allclose(dirs[: inner.n_side, 2], 0.0)


def test_veto_side_units_face_outward_on_column_edges(geo):
    lay = generate_layout(geo)
    veto = lay.veto
    first = lay.num_inner
    assert lay.units.positions[first].tolist()[:2] == pytest.approx([geo.veto_radius, 0.0])
    assert lay.units.directions[first].tolist() == pytest.approx([1.0, 0.0, 0.0])
    z = lay.units.positions[first: first + veto.rows, 2]
    # veto rows span the inner half-height
    assert z[0] == pytest.approx(veto.spacing / 2 - geo.half_height)
    assert z.max() < geo.half_height + veto.spacing


def test_endcap_pairs(geo):
    lay = generate_layout(geo)
    for arr, start, top_dz, z_cap in (
        (lay.inner, 0, -1.0, geo.half_height),
        (lay.veto, lay.num_inner, 1.0, geo.veto_half_height),
    ):
        assert arr.cap_points
        for k, (i, j) in enumerate(arr.cap_points):
            t = start + arr.n_side + 2 * k
            top, bottom = lay.units.positions[t], lay.units.positions[t + 1]
            assert top[:2].tolist() == pytest.approx([arr.spacing * i, arr.spacing * j])
            assert top[:2].tolist() == bottom[:2].tolist()
            assert top[2] == pytest.approx(z_cap) and bottom[2] == pytest.approx(-z_cap)
            assert lay.units.directions[t].tolist() == [0.0, 0.0, top_dz]
            assert lay.units.directions[t + 1].tolist() == [0.0, 0.0, -top_dz]


def test_veto_caps_bounded_by_inner_envelope(geo):
    lay = generate_layout(geo)
    inner, veto = lay.inner, lay.veto
    rdim = round_half_away(inner.radius / inner.spacing)
    bound = inner.radius - inner.spacing / 2
    for i, j in veto.cap_points:
        assert abs(i) <= rdim and abs(j) <= rdim
        assert veto.spacing * math.hypot(i, j) <= bound


def test_cables(geo):
    lay = generate_layout(geo)
    c = lay.cables
    assert len(c) == lay.inner.cols
    assert np.allclose(np.hypot(c.positions[:, 0], c.positions[:, 1]), geo.cable_radius)
    assert np.allclose(c.positions[:, 2], 0.0)
    assert np.allclose(c.directions, [0.0, 0.0, 1.0])
    assert c.positions[0, 1] == pytest.approx(0.0)


def test_write_layout_to_store(store, geo):
    apply_enclosure_updates(store, geo)
    lay = generate_layout(geo)
    write_layout(store, lay)

    shield = store.link("GEO", "shield")
    assert shield.get_int("veto_start") == lay.num_inner
    assert shield.get_int("veto_len") == lay.num_veto
    assert shield.get_int("inner_len") == lay.num_inner
    assert shield.get_int("cols") == lay.inner.cols
    assert store.link("GEO", "veto_pmts").get_int("end_idx") == lay.total - 1
    assert store.link("GEO", "inner_pmts").get_int("start_idx") == 0
    assert len(store.link("cable_pos").get_array("x")) == lay.inner.cols

    table = unit_table_from_store(store, "PMTINFO")
    assert np.allclose(table.positions, lay.units.positions)
    assert np.array_equal(table.types, lay.units.types)
    assert not table.has_unresolved_directions()


def test_missing_direction_columns_become_sentinel(store):
    store.set("POSONLY", "", "x", [1.0, 2.0])
    store.set("POSONLY", "", "y", [0.0, 0.0])
    store.set("POSONLY", "", "z", [0.0, 5.0])
    table = unit_table_from_store(store, "POSONLY")
    assert len(table) == 2
    assert table.has_unresolved_directions()
    assert table.types.tolist() == [-1, -1]
    assert len(table.slice(1, 1)) == 1 and len(table.slice(1, 0)) == 0


def test_unit_table_rejects_ragged_columns():
    with pytest.raises(ValueError):
        UnitTable(np.zeros((2, 3)), np.zeros((3, 3)), np.zeros(2))
