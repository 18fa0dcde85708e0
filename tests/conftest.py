import sys
import os
import pytest

# Add the project root directory to the python path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import config


@pytest.fixture
def history_dir(tmp_path, monkeypatch):
    """Points the local chat history store at a temp dir and forces the file backend."""
    monkeypatch.setattr(config, "CHAT_HISTORY_DIR", tmp_path / "chat_history")
    monkeypatch.setattr(config, "history_backend", lambda: "file")
    return tmp_path / "chat_history"
