from __future__ import annotations
from .schemas import Config
from pathlib import Path

try:
    import tomllib  # py311+
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # py<=310

def load_config(path: str | Path) -> Config:
    p = Path(path)
    data = tomllib.loads(p.read_text())
    return Config(**data)

def resolve_path(raw: str | Path, cfg_file: str | Path | None = None) -> Path:
    """Resolve a config-relative path against the config file's directory."""
    p = Path(raw)
    if p.is_absolute():
        return p
    base = Path(cfg_file).parent if cfg_file else Path.cwd()
    return (base / p).resolve()
