from __future__ import annotations
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Literal, Optional, List

from buttongeo.io.params import ParameterStore


class RunCfg(BaseModel):
    """
    Global run controls.

    TOML:

    [run]
    diagnostics_level = 1   # 0=warnings only, 1=summary, 2=verbose
    seed = 12345            # optional, fixes the random fallbacks
    """

    diagnostics_level: int = 1
    seed: Optional[int] = None

    @field_validator("diagnostics_level")
    def _diag_range(cls, v: int) -> int:
        if v not in (0, 1, 2):
            raise ValueError("diagnostics_level must be 0, 1, or 2")
        return v


class IOCfg(BaseModel):
    """
    I/O paths. Relative paths are resolved against the run-config directory.

    TOML:

    [io]
    params_path = "button.toml"
    output_path = "out/button_geometry.h5"
    data_dir    = "data"            # optional, searched for field/dynode files
    """

    params_path: str
    output_path: str
    data_dir: Optional[str] = None


class BuildCfg(BaseModel):
    """
    Which arrays are placed, in order, and whether the layout is regenerated.
    """

    arrays: List[str] = Field(default_factory=lambda: ["inner_pmts", "veto_pmts"])
    generate_layout: bool = True


class Config(BaseModel):
    """
    Top-level TOML run configuration.
    """

    run: RunCfg = Field(default_factory=RunCfg)
    io: IOCfg
    build: BuildCfg = Field(default_factory=BuildCfg)


class ArrayPlacementCfg(BaseModel):
    """
    Placement options for one array, resolved once from its GEO table.

    Optional values are None when absent from the table; rescale_radius and
    orient_point are only honoured when present.
    """

    name: str
    mother: str
    pmt_model: str
    pos_table: str = "PMTINFO"
    sensitive_detector: Optional[str] = None

    start_idx: Optional[int] = None
    end_idx: Optional[int] = None

    orientation: Literal["manual", "point"] = "point"
    orient_point: Optional[List[float]] = None
    flip: bool = False
    rescale_radius: Optional[float] = None
    use_parent_coordinates: bool = False

    mu_metal: bool = False
    encapsulation: bool = True
    light_cone: bool = False
    efficiency_correction: Optional[float] = None

    @field_validator("orient_point")
    def _three_values(cls, v: Optional[List[float]]) -> Optional[List[float]]:
        if v is not None and len(v) != 3:
            raise ValueError("orient_point must have 3 values")
        return v

    @model_validator(mode="after")
    def _point_needs_target(self) -> "ArrayPlacementCfg":
        if self.orientation == "point" and self.orient_point is None:
            raise ValueError(f"{self.name}: orientation 'point' requires orient_point")
        return self

    @classmethod
    def from_store(cls, store: ParameterStore, name: str) -> "ArrayPlacementCfg":
        fields = store.link("GEO", name).as_dict()
        known = {k: v for k, v in fields.items() if k in cls.model_fields}
        return cls(name=name, **known)


class FieldCorrectionCfg(BaseModel):
    """
    Ambient magnetic field efficiency correction.

    Resolved from the BField table (plus dynorfile.dynorfilename and
    DETECTOR.experiment); every key is optional.
    """

    b_field_on: bool = False
    b_field_file: Optional[str] = None
    b_efficiency_table: Optional[str] = None
    b_efficiency_model: Literal["multiplicative", "additive"] = "multiplicative"
    no_b_efficiency_table_correction: bool = False
    dynorfilename: Optional[str] = None
    experiment: Optional[str] = None

    @property
    def clamp_to_one(self) -> bool:
        return not self.no_b_efficiency_table_correction

    @classmethod
    def from_store(cls, store: ParameterStore) -> "FieldCorrectionCfg":
        data = {}
        if store.has("BField"):
            data.update(store.link("BField").as_dict())
        if store.has("dynorfile"):
            data["dynorfilename"] = store.link("dynorfile").get("dynorfilename")
        if store.has("DETECTOR"):
            data["experiment"] = store.link("DETECTOR").get("experiment")
        known = {k: v for k, v in data.items() if k in cls.model_fields and v is not None}
        return cls(**known)
