"""Test session configuration.

Loads the project `.env` file so integration runs can pick up `COUCH_*` and
`FOLLOWER_*` settings without exporting them manually.
"""

from __future__ import annotations

import pytest
from dotenv import load_dotenv


@pytest.fixture(scope="session", autouse=True)
def _load_dotenv_for_tests() -> None:
    # Load once per test session; no error if .env is absent.
    load_dotenv()


# Note: Individual tests can use the `monkeypatch` fixture to override env vars.
