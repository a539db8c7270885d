import os
import sys

import pytest


# Tests import both `backend.*` and `pos_terminal.*` from the repo root.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

AGENT_ENV_OVERRIDES = (
    "POS_API_BASE_URL",
    "POS_TERMINAL_ID",
    "POS_TERMINAL_TOKEN",
    "POS_FORCE_OFFLINE",
)


@pytest.fixture(autouse=True)
def _isolate_agent_env(monkeypatch):
    # A developer's local terminal config must not leak into agent tests.
    for name in AGENT_ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
