from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional
import typer

import numpy as np

from buttongeo.config.load import load_config, resolve_path
from buttongeo.config.schemas import ArrayPlacementCfg, Config, FieldCorrectionCfg
from buttongeo.geometry.derive import apply_enclosure_updates, derive_geometry
from buttongeo.geometry.layout import DetectorLayout, generate_layout, unit_table_from_store, write_layout
from buttongeo.io import layout_store
from buttongeo.io.params import ParameterStore
from buttongeo.physics.bfield import FieldCorrectionAssigner, NumpyRandomSource
from buttongeo.placement.backend import InMemoryBackend, PlacedUnit
from buttongeo.placement.engine import PlacementState, place_array

logger = logging.getLogger(__name__)

_LOG_LEVELS = {0: logging.WARNING, 1: logging.INFO, 2: logging.DEBUG}


def _make_assigner(
    store: ParameterStore,
    cfg: Config,
    cfg_path: str,
    seed: Optional[int],
    field: Optional[bool],
) -> FieldCorrectionAssigner:
    fcfg = FieldCorrectionCfg.from_store(store)
    if field is not None:
        fcfg.b_field_on = field
    rng = NumpyRandomSource(np.random.default_rng(seed))
    assigner = FieldCorrectionAssigner(fcfg, rng)

    data_dirs: List[Path] = []
    if cfg.io.data_dir:
        data_dirs.append(resolve_path(cfg.io.data_dir, cfg_path))
    data_dirs.append(Path(cfg_path).parent)
    assigner.load(store, data_dirs)
    return assigner


def build_geometry(
    store: ParameterStore,
    arrays: List[str],
    *,
    generate: bool = True,
    assigner: Optional[FieldCorrectionAssigner] = None,
    backend: Optional[InMemoryBackend] = None,
) -> tuple[Optional[DetectorLayout], Dict[str, List[PlacedUnit]], InMemoryBackend]:
    """
    Derive, lay out and place every array against an in-memory store.

    Order: parameter derivation -> layout + write-back -> placement per array.
    """
    geo = derive_geometry(store)
    apply_enclosure_updates(store, geo)

    layout = None
    if generate:
        layout = generate_layout(geo)
        write_layout(store, layout)

    backend = backend or InMemoryBackend(store)
    state = PlacementState()
    placed: Dict[str, List[PlacedUnit]] = {}
    tables = {}
    for name in arrays:
        acfg = ArrayPlacementCfg.from_store(store, name)
        if acfg.pos_table not in tables:
            tables[acfg.pos_table] = unit_table_from_store(store, acfg.pos_table)
        placed[name] = place_array(tables[acfg.pos_table], acfg, backend, state, assigner=assigner)
    logger.info("[run] Placed %d units in %d arrays", state.count, len(arrays))
    return layout, placed, backend


def run_build(
    cfg_path: str,
    *,
    seed: Optional[int] = None,
    field: Optional[bool] = None,
) -> Path:
    """
    Orchestrate one geometry build from a TOML run config.

    CLI flags (--seed/--field/--no-field) override the config / store when not None.

    Returns
    -------
    Path to written HDF5 file.
    """
    cfg = load_config(cfg_path)
    if seed is None:
        seed = cfg.run.seed

    params_path = resolve_path(cfg.io.params_path, cfg_path)
    out_path = resolve_path(cfg.io.output_path, cfg_path)
    logger.info("[run] config = %s", cfg_path)
    logger.info("[run] params = %s -> output = %s", params_path, out_path)

    store = ParameterStore.from_toml(params_path)
    assigner = _make_assigner(store, cfg, cfg_path, seed, field)
    layout, placed, backend = build_geometry(
        store, cfg.build.arrays, generate=cfg.build.generate_layout, assigner=assigner,
    )

    out_path.parent.mkdir(parents=True, exist_ok=True)
    with layout_store.write_init(out_path, Path(cfg_path).read_text()) as f:
        if layout is not None:
            layout_store.write_layout(f, layout)
        for name, units in placed.items():
            layout_store.write_placements(f, name, units)
        for name, records in backend.corrections.items():
            layout_store.write_corrections(f, name, records)
    return out_path


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

app = typer.Typer(help="BUTTON detector PMT layout and placement (buttongeo.pipelines.core)")


@app.command()
def main(
    cfg_path: str = typer.Argument(
        ...,
        help="Path to TOML run config",
    ),
    seed: Optional[int] = typer.Option(
        None,
        "--seed",
        help="Seed for calibration-sheet and dynode-axis draws; overrides [run].seed",
    ),
    field: Optional[bool] = typer.Option(
        None,
        "--field / --no-field",
        help="Force the magnetic efficiency correction on or off; overrides BField.b_field_on",
    ),
    diagnostics: Optional[int] = typer.Option(
        None,
        "--diagnostics",
        "-d",
        help="0=warnings, 1=summary, 2=verbose; overrides [run].diagnostics_level",
    ),
):
    """
    Generate the PMT layout, place all configured arrays and write the build file.
    """
    level = diagnostics if diagnostics is not None else load_config(cfg_path).run.diagnostics_level
    logging.basicConfig(level=_LOG_LEVELS.get(level, logging.DEBUG), format="%(levelname)s %(message)s")
    out_path = run_build(cfg_path, seed=seed, field=field)
    typer.echo(str(out_path))


if __name__ == "__main__":
    app()
