from pathlib import Path

import numpy as np
import pytest

from buttongeo.geometry.derive import derive_geometry
from buttongeo.io.params import ParameterStore

# Small detector: pmt_radius 980, half_height 1000, veto_radius 1680,
# veto_half_height 1700, cable_radius 1020, photocathode radius 100 (mm).
PARAMS_TOML = """
[BUTTON_PARAMS]
photocathode_coverage = 0.1
veto_coverage = 0.01

[PMT.r7081]
rho_edge = [0.0, 60.0, 100.0, 80.0]

[GEO.cavern]
mother = "world"
size_z = 3000.0

[GEO.rock_1]
mother = "world"
position = [0.0, 0.0, 0.0]

[GEO.tank]
mother = "cavern"
position = [0.0, 0.0, 0.0]

[GEO.water]
mother = "tank"
position = [0.0, 0.0, 0.0]

[GEO.shield]
steel_thickness = 5.0
veto_thickness_r = 1000.0
veto_thickness_z = 1000.0
detector_size_d = 4000.0
detector_size_z = 4000.0

[GEO.inner_pmts]
mother = "water"
pmt_model = "r7081"
pos_table = "PMTINFO"
orientation = "manual"
use_parent_coordinates = 1
black_sheet_offset = 300.0
black_sheet_thickness = 10.0
encapsulation = 1
light_cone = 0
mu_metal = 0

[GEO.veto_pmts]
mother = "water"
pmt_model = "r7081"
pos_table = "PMTINFO"
orientation = "manual"
flip = 0
use_parent_coordinates = 0
encapsulation = 0
light_cone = 0

[GEO.Bottom_cap_standoff_frame_0]
size = [100.0, 100.0, 50.0]
position = [0.0, 0.0, -1500.0]
"""

BFIELD_TOML = """
[BField]
b_field_on = 1
b_field_file = "bfield.dat"
b_efficiency_table = "PMT_BEFF"
b_efficiency_model = "multiplicative"

[PMT_BEFF]
b = [0.0, 1.0]
deltax = [1.0, 0.8]
deltay = [1.0, 0.9]
"""


class FixedRandomSource:
    """Replays given directions and indices in order."""

    def __init__(self, directions=(), indices=()):
        self.directions = [np.asarray(d, dtype=float) for d in directions]
        self.indices = list(indices)

    def direction(self):
        return self.directions.pop(0)

    def index(self, n):
        return self.indices.pop(0) % n


@pytest.fixture
def params_file(tmp_path: Path) -> Path:
    p = tmp_path / "button.toml"
    p.write_text(PARAMS_TOML)
    return p


@pytest.fixture
def store(params_file: Path) -> ParameterStore:
    return ParameterStore.from_toml(params_file)


@pytest.fixture
def geo(store):
    return derive_geometry(store)
