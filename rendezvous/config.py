import logging
import os
from dataclasses import dataclass, fields

import yaml


@dataclass
class ServerConfig:
    listen_port: int = 8000
    directory_root: str = "./friends"
    worker_count: int = 10
    idle_timeout: float = 300.0
    log_level: str = "INFO"


def load_config(path):
    """
    Load server settings from a YAML file, falling back to defaults for
    anything the file leaves out. A missing file yields the defaults.
    """
    data = {}
    if path and os.path.exists(path):
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    known = {f.name for f in fields(ServerConfig)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown config keys in {path}: {', '.join(sorted(unknown))}")

    config = ServerConfig(**data)
    if config.worker_count < 1:
        raise ValueError("worker_count must be at least 1")
    if not isinstance(logging.getLevelName(str(config.log_level).upper()), int):
        raise ValueError(f"Unknown log_level {config.log_level!r}")
    return config
