"""Common utilities for the Rosey calendar bot."""
from .config import configure_logger, get_config, load_config

__all__ = ['get_config', 'configure_logger', 'load_config']
