# Copyright (c) 2025 Akita Engineering <https://www.akitaengineering.com>
# SPDX-License-Identifier: GPL-3.0-or-later

# EDTSP: device discovery and highest-ID master election over UDP multicast.
from .node import Node
from .config import load_config
from .packets import decode, encode

__version__ = "0.1.0"
