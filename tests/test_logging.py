"""Tests for loguru setup."""

import json
import logging
import os
import time
from pathlib import Path

import pytest
from loguru import logger

from xr_osc_bridge.logging_utils import configure_logging, keep_newest_files, log_file_name


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    logger.remove()
    logging.basicConfig(handlers=[], force=True)


class TestConfigureLogging:
    def test_console_only(self):
        assert configure_logging(None, role="client") is None

    def test_file_sink_is_json(self, tmp_path: Path):
        log_file = configure_logging(tmp_path / "logs", role="server", console_level="WARNING")
        assert log_file == tmp_path / "logs" / "xr-osc-bridge-server.log"

        logger.info("relay ready")
        logger.remove()

        records = [json.loads(line) for line in log_file.read_text().splitlines()]
        ready = [r for r in records if r["record"]["message"] == "relay ready"]
        assert ready
        assert ready[0]["record"]["extra"]["role"] == "server"

    def test_stdlib_logging_is_intercepted(self, tmp_path: Path):
        log_file = configure_logging(tmp_path, role="client")
        logging.getLogger("zmq.test").warning("from stdlib")
        logger.remove()
        assert "from stdlib" in log_file.read_text()

    def test_unusable_log_dir_falls_back_to_console(self, tmp_path: Path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        assert configure_logging(blocker / "logs") is None


def test_log_file_name():
    assert log_file_name("client") == "xr-osc-bridge-client.log"


def test_keep_newest_files(tmp_path: Path):
    paths = []
    now = time.time()
    for i in range(5):
        path = tmp_path / f"relay.{i}.log"
        path.write_text("x")
        os.utime(path, (now - 100 + i, now - 100 + i))
        paths.append(path)

    removed = keep_newest_files([str(p) for p in paths], keep=2)

    assert sorted(removed) == sorted(paths[:3])
    assert [p.exists() for p in paths] == [False, False, False, True, True]
