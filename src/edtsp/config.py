# Copyright (c) 2025 Akita Engineering <https://www.akitaengineering.com>
# SPDX-License-Identifier: GPL-3.0-or-later

import ipaddress
import json
import logging
import os
from typing import Dict, Any, Optional

from .exceptions import ConfigurationError
from .protocol import (DEFAULT_MULTICAST_GROUP, DEFAULT_PORT, HEARTBEAT_INTERVAL_MS, HEARTBEAT_TIMEOUT_MS,
                       SWEEP_INTERVAL_MS, STATUS_INTERVAL_MS, RECEIVE_TIMEOUT_MS, MAX_DEVICES,
                       MAX_DATAGRAM_SIZE, MAX_DEVICE_ID, HEADER_SIZE, parse_interface_type)

logger = logging.getLogger(__name__) # Define logger at module level

DEFAULT_ID_FILE = "/tmp/edtsp_device_id"

# Default values for configuration
DEFAULT_CONFIG = {
    "node_id": None,          # None -> read/generate via id_file
    "id_file": DEFAULT_ID_FILE,
    "device_name": None,      # None -> host name
    "interface_type": "ETH",
    "multicast_group": DEFAULT_MULTICAST_GROUP,
    "port": DEFAULT_PORT,
    "multicast_ttl": 1,
    "heartbeat_interval_ms": HEARTBEAT_INTERVAL_MS,
    "sweep_interval_ms": SWEEP_INTERVAL_MS,
    "device_timeout_ms": HEARTBEAT_TIMEOUT_MS,
    "status_interval_ms": STATUS_INTERVAL_MS,
    "receive_timeout_ms": RECEIVE_TIMEOUT_MS,
    "max_devices": MAX_DEVICES,
    "max_datagram_size": MAX_DATAGRAM_SIZE,
    "strict_payload_len": False,
    "log_level": "INFO",
}

# Keys whose None value is meaningful, validated separately below
_NULLABLE_KEYS = ["node_id", "device_name"]


def default_config() -> Dict[str, Any]:
    """A validated copy of the defaults, for running without a config file."""
    return validate_config(DEFAULT_CONFIG.copy())


def load_config(config_path: Optional[str]) -> Dict[str, Any]:
    """
    Loads configuration from a JSON file, applies defaults, and performs validation.
    A missing or unreadable file falls back to defaults.
    """
    config = DEFAULT_CONFIG.copy()
    if config_path and os.path.exists(config_path):
        try:
            with open(config_path, 'r') as f:
                user_config = json.load(f)
            if not isinstance(user_config, dict):
                raise ConfigurationError(f"Top level of {config_path} must be a JSON object.")
            # Only update keys that exist in DEFAULT_CONFIG
            valid_keys = DEFAULT_CONFIG.keys()
            filtered_user_config = {k: v for k, v in user_config.items() if k in valid_keys}
            config.update(filtered_user_config)
            logger.info(f"Loaded configuration from {config_path}")
            ignored_keys = [k for k in user_config if k not in valid_keys]
            if ignored_keys:
                logger.warning(f"Ignored unknown configuration keys: {ignored_keys}")
        except json.JSONDecodeError:
            logger.error(f"Error decoding JSON from {config_path}. Using defaults.", exc_info=True)
        except OSError:
            logger.error(f"Failed to read config file {config_path}. Using defaults.", exc_info=True)
    elif config_path:
        logger.warning(f"Configuration file '{config_path}' not found. Using default values.")

    return validate_config(config)


def validate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Validates a merged config dict in place and returns it."""
    # --- Identity ---
    node_id = config.get("node_id")
    if node_id is not None:
        if isinstance(node_id, bool) or not isinstance(node_id, int):
            raise ConfigurationError("'node_id' must be an integer.")
        if not 0 < node_id <= MAX_DEVICE_ID:
            raise ConfigurationError(f"'node_id' must be in 1..0x{MAX_DEVICE_ID:08X} (got {node_id}).")

    device_name = config.get("device_name")
    if device_name is not None and not isinstance(device_name, str):
        logger.warning(f"Config key 'device_name' must be a string (got {type(device_name).__name__}). Using host name.")
        config["device_name"] = None

    # Validate types and ranges
    for key, default_value in DEFAULT_CONFIG.items():
        if key in _NULLABLE_KEYS: continue # Handled above

        value = config.get(key)
        if value is None:
            logger.warning(f"Config key '{key}' was null, using default: {default_value}")
            config[key] = default_value
            continue

        expected_type = type(default_value)
        # bool is an int subclass; do not let true/false stand in for numbers
        wrong_type = not isinstance(value, expected_type) or (expected_type is int and isinstance(value, bool))
        if wrong_type:
            logger.warning(f"Config key '{key}' has incorrect type (got {type(value).__name__}, expected {expected_type.__name__}). Using default: {default_value}")
            config[key] = default_value
            continue

        if expected_type is int:
            if value < 0:
                logger.warning(f"Config key '{key}' should not be negative (got {value}). Using default: {default_value}")
                config[key] = default_value
            elif value == 0 and default_value != 0:
                logger.warning(f"Config key '{key}' is zero, but default is {default_value}. Using default.")
                config[key] = default_value

    if config["max_datagram_size"] < HEADER_SIZE:
        logger.warning(f"max_datagram_size {config['max_datagram_size']} is smaller than a header. Using default: {MAX_DATAGRAM_SIZE}")
        config["max_datagram_size"] = MAX_DATAGRAM_SIZE

    # --- Network ---
    try:
        group = ipaddress.IPv4Address(config["multicast_group"])
    except ValueError:
        raise ConfigurationError(f"'multicast_group' is not an IPv4 address: {config['multicast_group']!r}")
    if not group.is_multicast:
        raise ConfigurationError(f"'multicast_group' {group} is not a multicast address.")
    if not 0 < config["port"] <= 65535:
        raise ConfigurationError(f"'port' must be in 1..65535 (got {config['port']}).")

    try:
        parse_interface_type(config["interface_type"])
    except ValueError:
        logger.warning(f"Invalid interface_type '{config['interface_type']}'. Using default: {DEFAULT_CONFIG['interface_type']}")
        config["interface_type"] = DEFAULT_CONFIG["interface_type"]

    # Validate log level string
    log_level_str = str(config.get("log_level", "INFO")).upper() # Ensure string and uppercase
    if log_level_str not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        logger.warning(f"Invalid log_level '{log_level_str}'. Using default: INFO")
        config["log_level"] = "INFO"
    else:
        config["log_level"] = log_level_str # Store the validated uppercase string

    logger.debug(f"Final configuration: {config}")
    return config


def get_log_level(log_level_str: Optional[str]) -> int:
    """Converts log level string to logging level integer."""
    return getattr(logging, str(log_level_str).upper(), logging.INFO)
