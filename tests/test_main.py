import json
import logging

import pytest

from edtsp import main as edtsp_main
from edtsp.utils import setup_logging


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    level, handlers = root.level, list(root.handlers)
    yield root
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


def test_setup_logging_overrides_earlier_basic_config(restore_root_logging):
    logging.basicConfig(level=logging.INFO)
    setup_logging(level=logging.DEBUG)
    assert restore_root_logging.level == logging.DEBUG


def test_cli_applies_configured_log_level(tmp_path, monkeypatch, restore_root_logging):
    config_path = tmp_path / "edtsp_config.json"
    config_path.write_text(json.dumps({"node_id": 5, "log_level": "DEBUG"}))
    built = []

    class RecordingNode:
        is_running = False

        def __init__(self, config):
            built.append((config["node_id"], logging.getLogger().level))

        def run(self):
            pass

    monkeypatch.setattr(edtsp_main, "Node", RecordingNode)
    monkeypatch.setattr(edtsp_main.signal, "signal", lambda *args: None)
    monkeypatch.setattr(edtsp_main, "node_instance_global", None)
    logging.basicConfig(level=logging.INFO)

    edtsp_main.main(["--config", str(config_path)])

    assert built == [(5, logging.DEBUG)]


def test_cli_node_id_override(tmp_path, monkeypatch, restore_root_logging):
    built = []

    class RecordingNode:
        is_running = False

        def __init__(self, config):
            built.append(config["node_id"])

        def run(self):
            pass

    monkeypatch.setattr(edtsp_main, "Node", RecordingNode)
    monkeypatch.setattr(edtsp_main.signal, "signal", lambda *args: None)
    monkeypatch.setattr(edtsp_main, "node_instance_global", None)

    edtsp_main.main(["--config", str(tmp_path / "absent.json"), "--node-id", "0x2A"])

    assert built == [0x2A]
