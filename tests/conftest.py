import os

import pytest
import structlog

from deckhand.config import Config, set_config
from deckhand.llm import set_provider


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch, tmp_path):
    """Every test starts from default settings, isolated from the user's files."""
    for name in list(os.environ):
        if name.startswith("DECKHAND_"):
            monkeypatch.delenv(name, raising=False)
    cfg = Config()
    cfg.session.path = str(tmp_path / "sessions")
    set_config(cfg)
    set_provider(None)
    yield cfg
    set_provider(None)


@pytest.fixture(autouse=True)
def reset_structlog():
    """Undo logging setup done by CLI tests so later tests don't log to a closed capture stream."""
    yield
    structlog.reset_defaults()
