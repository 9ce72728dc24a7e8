# Copyright (c) 2025 Akita Engineering <https://www.akitaengineering.com>
# SPDX-License-Identifier: GPL-3.0-or-later

import argparse
import logging
import os
import signal # For graceful shutdown
import sys
from typing import Optional

from edtsp import config as edtsp_config, exceptions, utils as edtsp_utils
from edtsp.identity import FileIdentityProvider
from edtsp.node import Node

# Basic logging until the config file tells us the real level
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(name)s - %(message)s')
logger = logging.getLogger(__name__)

# Node instance for the signal handler
node_instance_global: Optional[Node] = None


def handle_signal(sig, frame):
    """Gracefully handle termination signals (SIGINT, SIGTERM)."""
    signal_name = signal.Signals(sig).name
    logger.warning(f"Received signal {signal_name} ({sig}). Initiating graceful shutdown...")
    if node_instance_global:
        # The loop exits at the next tick; run() releases the transport itself.
        node_instance_global.stop()
    else:
        logger.warning("Node instance not available for signal handler cleanup. Exiting directly.")
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run an EDTSP node: multicast discovery, heartbeats and highest-ID leader election.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument(
        "--config",
        type=str,
        default="edtsp_config.json",
        help="Path to the node configuration JSON file (defaults are used if it is missing).",
    )
    parser.add_argument(
        "--node-id",
        type=lambda s: int(s, 0),
        default=None,
        help="Override the device identifier (decimal or 0x-prefixed hex).",
    )
    parser.add_argument(
        "--reset-id",
        action="store_true",
        help="Delete the persisted device identifier before starting so a new one is generated.",
    )
    return parser


def main(argv=None):
    """Main entry point for running an EDTSP Node."""
    global node_instance_global

    args = build_parser().parse_args(argv)
    config_path = args.config

    try:
        loaded_config = edtsp_config.load_config(config_path)
        if args.node_id is not None:
            loaded_config["node_id"] = args.node_id
            loaded_config = edtsp_config.validate_config(loaded_config)
    except exceptions.ConfigurationError as e:
        logger.critical(f"Halting due to critical configuration error from '{config_path}': {e}")
        sys.exit(1)

    log_level = edtsp_config.get_log_level(loaded_config.get('log_level'))
    edtsp_utils.setup_logging(level=log_level)
    logger.info(f"EDTSP Node starting. Effective logging level: {logging.getLevelName(log_level)}")
    logger.info(f"Using configuration file: {os.path.abspath(config_path)}")

    if args.reset_id:
        FileIdentityProvider(loaded_config["id_file"]).reset()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    try:
        node_instance_global = Node(config=loaded_config)
        node_instance_global.run() # Blocks until stop() or a fatal error
    except exceptions.NetworkError as e:
        logger.critical(f"Transport setup failed: {e}")
        sys.exit(1)
    except exceptions.EDTSPException as e:
        logger.critical(f"CRITICAL EDTSP ERROR during node setup or runtime: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if node_instance_global is not None and node_instance_global.is_running:
            logger.warning("Node loop exited unexpectedly but was still marked running. Forcing shutdown.")
            node_instance_global.shutdown()
        logger.info("EDTSP Node process fully exited.")


if __name__ == "__main__":
    main()
