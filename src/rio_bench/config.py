import copy
import json
import os
import tomllib
from pathlib import Path
from typing import Any

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"

ENV_OVERRIDES = {
    "RIO_WS_URL": ("node", "ws_url"),
    "RIO_RPC_URL": ("node", "rpc_url"),
    "RIO_FUNDING_URI": ("funding_account", "uri"),
}


def deep_update(base: dict, override: dict) -> dict:
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            deep_update(base[k], v)
        else:
            base[k] = v
    return base


def load_config(path: Path | str | None = None, overrides: dict | None = None) -> dict[str, Any]:
    """Build the effective config.

    Packaged defaults, then the user's TOML file, then environment, then ``overrides``
    (usually CLI flags). Later layers win.
    """
    conf = tomllib.loads(config_file.read_text())
    if path is not None:
        deep_update(conf, tomllib.loads(Path(path).read_text()))

    for var, (section, key) in ENV_OVERRIDES.items():
        if value := os.getenv(var):
            conf.setdefault(section, {})[key] = value

    if overrides:
        deep_update(conf, copy.deepcopy(overrides))
    return conf


def load_type_registry(conf: dict) -> dict:
    """Custom chain types in the shape substrate-interface expects."""
    types_file = Path(conf["node"]["types_file"])
    if not types_file.is_absolute():
        types_file = pkg_root / types_file
    return {"types": json.loads(types_file.read_text())}


def storage_target(conf: dict, name: str) -> tuple[str, str]:
    module, function = conf["storage"][name]
    return module, function


cfg = load_config(os.getenv("RIO_BENCH_CONFIG"))
