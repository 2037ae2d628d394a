# src/buttongeo/io/params.py
from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Tuple

import numpy as np

try:
    import tomllib  # py311+
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # py<=310

TableKey = Tuple[str, str]


class ParameterNotFoundError(KeyError):
    """Raised when a required (table, index) or key is absent from the store."""

    def __init__(self, table: str, index: str = "", key: str | None = None):
        self.table = table
        self.index = index
        self.key = key
        where = f"{table}[{index}]" if index else table
        msg = f"{where}: no such table" if key is None else f"{where}: missing key {key!r}"
        super().__init__(msg)

    def __str__(self) -> str:
        return str(self.args[0])


def _plain(value: Any) -> Any:
    """Store values as plain Python scalars / lists so the store can be dumped back."""
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


class TableLink:
    """
    Read/write handle on one (table, index) entry of a ParameterStore.

    Getters raise ParameterNotFoundError for absent keys; use .get(key, default)
    for optional values.
    """

    def __init__(self, store: "ParameterStore", table: str, index: str = ""):
        self.store = store
        self.table = table
        self.index = index

    @property
    def _data(self) -> Dict[str, Any]:
        return self.store._tables[(self.table, self.index)]

    def has(self, key: str) -> bool:
        return key in self._data

    def _require(self, key: str) -> Any:
        try:
            return self._data[key]
        except KeyError:
            raise ParameterNotFoundError(self.table, self.index, key) from None

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def get_scalar(self, key: str) -> float:
        return float(self._require(key))

    def get_int(self, key: str) -> int:
        return int(self._require(key))

    def get_str(self, key: str) -> str:
        return str(self._require(key))

    def get_array(self, key: str) -> np.ndarray:
        return np.asarray(self._require(key), dtype=np.float64)

    def get_int_array(self, key: str) -> np.ndarray:
        return np.asarray(self._require(key), dtype=np.int64)

    def set(self, key: str, value: Any) -> None:
        self.store.set(self.table, self.index, key, value)

    def as_dict(self) -> Dict[str, Any]:
        return dict(self._data)

    def __repr__(self) -> str:
        return f"TableLink({self.table!r}, {self.index!r})"


class ParameterStore:
    """
    Named geometry parameters addressed by (table, index) then key.

    TOML layout:

    [BUTTON_PARAMS]                # -> ("BUTTON_PARAMS", "")
    photocathode_coverage = 0.2

    [GEO.shield]                   # -> ("GEO", "shield")
    detector_size_d = 8000.0
    """

    def __init__(self, tables: Mapping[TableKey, Mapping[str, Any]] | None = None):
        self._tables: Dict[TableKey, Dict[str, Any]] = {}
        for (table, index), fields in (tables or {}).items():
            self._tables[(table, index)] = {k: _plain(v) for k, v in fields.items()}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Mapping[str, Any]]) -> "ParameterStore":
        tables: Dict[TableKey, Dict[str, Any]] = {}
        for name, body in data.items():
            if not isinstance(body, Mapping):
                raise ValueError(f"Top-level entry {name!r} must be a table, got {type(body).__name__}")
            scalars = {k: v for k, v in body.items() if not isinstance(v, Mapping)}
            subtables = {k: v for k, v in body.items() if isinstance(v, Mapping)}
            if scalars or not subtables:
                tables[(name, "")] = scalars
            for index, fields in subtables.items():
                tables[(name, index)] = dict(fields)
        return cls(tables)

    @classmethod
    def from_toml(cls, path: str | Path) -> "ParameterStore":
        p = Path(path)
        return cls.from_mapping(tomllib.loads(p.read_text()))

    def has(self, table: str, index: str = "") -> bool:
        return (table, index) in self._tables

    def link(self, table: str, index: str = "") -> TableLink:
        if (table, index) not in self._tables:
            raise ParameterNotFoundError(table, index)
        return TableLink(self, table, index)

    def set(self, table: str, index: str, key: str, value: Any) -> None:
        self._tables.setdefault((table, index), {})[key] = _plain(value)

    def tables(self) -> Iterable[TableKey]:
        return list(self._tables)

    def to_mapping(self) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        for (table, index), fields in self._tables.items():
            body = out.setdefault(table, {})
            if index:
                body[index] = dict(fields)
            else:
                body.update(fields)
        return out
