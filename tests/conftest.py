from __future__ import annotations

from pathlib import Path

import pytest

from gihftp.logs import logger


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Keep host config files, credentials and leftover log handlers out of every test."""
    monkeypatch.setattr("gihftp.config.DEFAULT_CONFIG_PATHS", (tmp_path / "etc-gihftp.conf",))
    monkeypatch.delenv("FTP_PASSWORD", raising=False)
    monkeypatch.delenv("SSH_KEY_PASSPHRASE", raising=False)
    yield
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
