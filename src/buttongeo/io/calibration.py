# src/buttongeo/io/calibration.py
from __future__ import annotations
from dataclasses import dataclass
from typing import List

import numpy as np

from buttongeo.io.params import TableLink


@dataclass
class CalibrationCurve:
    """
    Response delta as a function of field magnitude, one measured sheet axis.

    Values outside the measured range take the nearest end value.
    """
    b: np.ndarray
    delta: np.ndarray

    def __post_init__(self):
        b = np.asarray(self.b, dtype=np.float64)
        d = np.asarray(self.delta, dtype=np.float64)
        if b.shape != d.shape or b.ndim != 1 or b.size == 0:
            raise ValueError(
                f"Calibration curve needs matching non-empty 1-D arrays, got b{b.shape} delta{d.shape}"
            )
        order = np.argsort(b, kind="stable")
        self.b = b[order]
        self.delta = d[order]

    def eval(self, value: float) -> float:
        return float(np.interp(value, self.b, self.delta))


@dataclass
class CalibrationSheet:
    """Paired curves for the dynode-axis (x) and cross-axis (y) field components."""
    x: CalibrationCurve
    y: CalibrationCurve


def load_calibration_sheets(link: TableLink) -> List[CalibrationSheet]:
    """
    Read sheet 0 from b/deltax/deltay and, when nsheets > 1, sheets
    1..nsheets-1 from deltax{N}/deltay{N} on the same b grid.
    """
    b = link.get_array("b")
    sheets = [CalibrationSheet(CalibrationCurve(b, link.get_array("deltax")),
                               CalibrationCurve(b, link.get_array("deltay")))]
    nsheets = int(link.get("nsheets", 0))
    for n in range(1, nsheets):
        sheets.append(CalibrationSheet(CalibrationCurve(b, link.get_array(f"deltax{n}")),
                                       CalibrationCurve(b, link.get_array(f"deltay{n}"))))
    return sheets
