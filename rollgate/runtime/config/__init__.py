from .config_data import ConfigData
from .config_loader import load_config

__all__ = ["ConfigData", "load_config"]
