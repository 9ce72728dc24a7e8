# Copyright (c) 2025 Akita Engineering <https://www.akitaengineering.com>
# SPDX-License-Identifier: GPL-3.0-or-later

import logging
import os
import secrets
from typing import Optional

from .config import DEFAULT_ID_FILE
from .protocol import MAX_DEVICE_ID
from .utils import format_id

logger = logging.getLogger(__name__)

ID_SIZE = 4


def generate_device_id() -> int:
    """Random nonzero 32-bit identifier."""
    device_id = secrets.randbits(32)
    return device_id or 1


class FileIdentityProvider:
    """
    Persistent device identifier kept in a small file (4 bytes, big-endian).

    The first call on a device generates a random id and stores it; later
    calls, including after a restart, return the stored value.
    """

    def __init__(self, path: str = DEFAULT_ID_FILE):
        self.path = path
        self._cached: Optional[int] = None

    def _read(self) -> Optional[int]:
        try:
            with open(self.path, "rb") as f:
                raw = f.read(ID_SIZE + 1)
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Could not read device id from {self.path}: {e}")
            return None

        if len(raw) != ID_SIZE:
            logger.warning(f"Ignoring malformed device id file {self.path} ({len(raw)} bytes)")
            return None
        device_id = int.from_bytes(raw, "big")
        return device_id if 0 < device_id <= MAX_DEVICE_ID else None

    def _write(self, device_id: int):
        try:
            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.path, "wb") as f:
                f.write(device_id.to_bytes(ID_SIZE, "big"))
            logger.info(f"Saved device id to: {self.path}")
        except OSError as e:
            logger.warning(f"Could not save device id to {self.path}: {e}")

    def get_device_id(self) -> int:
        if self._cached is not None:
            return self._cached

        device_id = self._read()
        if device_id is not None:
            logger.info(f"Loaded persistent ID: {format_id(device_id)}")
        else:
            device_id = generate_device_id()
            logger.info(f"Generated new random ID: {format_id(device_id)}")
            self._write(device_id)

        self._cached = device_id
        return device_id

    __call__ = get_device_id

    def reset(self):
        """Forgets the stored id; the next call generates a new one."""
        self._cached = None
        try:
            os.remove(self.path)
            logger.info(f"Device id reset ({self.path} deleted)")
        except FileNotFoundError:
            pass
