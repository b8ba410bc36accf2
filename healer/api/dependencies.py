"""
Shared FastAPI dependencies.
The API reads the same configuration as the loop, so it looks at the same
state directory, checkpoint store and stop marker.
"""
from healer.core.config import CONFIG_PATH, LoopConfig, load_config


def get_config() -> LoopConfig:
    return load_config(CONFIG_PATH or None)
