"""Fixtures shared across the keyvend test suite."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
import yaml

# src/ layout: importable without ``pip install -e .``
_SRC = Path(__file__).resolve().parents[1] / "src"
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

OPERATOR_ID = 1000
MANAGEMENT_URL = "https://203.0.113.7:4321/SeCrEt"


@pytest.fixture()
def minimal_config_data() -> dict:
    """Only the keys without a default: store credentials, both API URLs, the operator."""
    return {
        "database": {"database": "keyvend_test", "user": "testuser"},
        "provisioning": {"api_url": MANAGEMENT_URL},
        "chat": {"api_url": "https://api.telegram.org/bot123:abc", "operator_id": OPERATOR_ID},
    }


@pytest.fixture()
def tmp_config_file(tmp_path: Path, minimal_config_data: dict) -> Path:
    path = tmp_path / "config.yaml"
    with path.open("w", encoding="utf-8") as fh:
        yaml.safe_dump(minimal_config_data, fh, sort_keys=False)
    return path


@pytest.fixture(autouse=True)
def fresh_config():
    # KeyvendConfig is a process-wide singleton
    from keyvend.config.keyvend_config import KeyvendConfig  # noqa: PLC0415

    KeyvendConfig.reset()
    yield
    KeyvendConfig.reset()
