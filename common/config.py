#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import json
import logging
import os

import yaml


DEFAULT_LOG_FORMAT = '[%(asctime).19s] [%(name)s] [%(levelname)s] %(message)s'

DEFAULTS = {
    'nats_url': 'nats://localhost:4222',
    'log_level': 'info',
    'log_file': None,
    'plugins': {},
}


class RobustFileHandler(logging.FileHandler):
    """FileHandler that gracefully handles flush errors on Windows"""

    def flush(self):
        """Flush the stream, catching OSError on Windows file handles"""
        try:
            super().flush()
        except OSError as e:
            # EINVAL from a Windows handle in an inconsistent state
            if e.errno != 22:
                raise


def configure_logger(logger,
                     log_file=None,
                     log_format=None,
                     log_level=logging.INFO):
    """Configure a logger with a file or stream handler

    Args:
        logger: Logger instance or logger name string
        log_file: File path string or file-like object (None for stderr)
        log_format: Format string for log messages
        log_level: Logging level (e.g., logging.INFO, logging.DEBUG)

    Returns:
        Configured logger instance
    """
    if isinstance(log_file, str):
        handler = RobustFileHandler(
            log_file,
            mode='a',
            encoding='utf-8',
            errors='replace'
        )
    else:
        handler = logging.StreamHandler(log_file)  # Default to stderr if None

    handler.setFormatter(logging.Formatter(log_format or DEFAULT_LOG_FORMAT))

    if isinstance(logger, str):
        logger = logging.getLogger(logger)

    logger.addHandler(handler)
    logger.setLevel(log_level)

    return logger


def parse_log_level(value):
    """Convert a level name like 'info' to a logging constant

    Raises:
        ValueError: If the name is not a logging level
    """
    if isinstance(value, int):
        return value
    level = logging.getLevelName(str(value).upper())
    if not isinstance(level, int):
        raise ValueError(f'unknown log level: {value!r}')
    return level


def load_config(config_file):
    """Load a JSON or YAML configuration file and apply defaults

    Args:
        config_file: Path to a .json, .yaml or .yml file

    Returns:
        Configuration dictionary
    """
    with open(config_file, 'r', encoding='utf-8') as fp:
        if config_file.endswith(('.yaml', '.yml')):
            conf = yaml.safe_load(fp) or {}
        else:
            conf = json.load(fp)

    if not isinstance(conf, dict):
        raise ValueError(f'{config_file}: top level must be a mapping')

    merged = dict(DEFAULTS)
    merged.update(conf)

    # NATS_URL in the environment wins over the file
    if os.environ.get('NATS_URL'):
        merged['nats_url'] = os.environ['NATS_URL']

    return merged


def get_config(config_file):
    """Load configuration and set up logging

    Args:
        config_file: Path to the configuration file

    Returns:
        Tuple of (conf, plugin_conf) where:
            conf: Full configuration dictionary
            plugin_conf: Settings for the google_calendar plugin
    """
    conf = load_config(config_file)
    log_level = parse_log_level(conf.get('log_level', 'info'))

    logging.basicConfig(level=log_level, format=DEFAULT_LOG_FORMAT)
    if conf.get('log_file'):
        configure_logger(logging.getLogger(), conf['log_file'], log_level=log_level)

    plugin_conf = (conf.get('plugins') or {}).get('google_calendar') or {}
    return conf, plugin_conf
