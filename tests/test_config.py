from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from wallet_pnl.config import USDC_MINT, WSOL_MINT, Settings, load_settings


REPO_CONFIG = Path(__file__).resolve().parents[1] / "configs" / "config.yaml"


def test_repo_config_matches_defaults():
    s = load_settings(str(REPO_CONFIG))
    assert s.ingestion.lookback_days == 365
    assert s.ingestion.max_signatures == 50000
    assert s.classifier.reference_mint == WSOL_MINT
    assert USDC_MINT in s.classifier.quote_mints
    assert s.orchestrator.reuse_window_hours == 24


def test_yaml_and_env_overrides(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text("ingestion:\n  lookback_days: 30\nhelius:\n  api_key: from-file\n", encoding="utf-8")
    monkeypatch.setenv("HELIUS__API_KEY", "from-env")
    monkeypatch.setenv("INGESTION__MAX_RETRIES", "5")
    s = load_settings(str(path))
    assert s.ingestion.lookback_days == 30
    assert s.ingestion.max_retries == 5
    assert s.helius.api_key == "from-env"


def test_missing_file_uses_defaults(tmp_path):
    s = load_settings(str(tmp_path / "absent.yaml"))
    assert s.helius.requests_per_second == 10
    assert s.cache.redis_url == ""


@pytest.mark.parametrize(
    "overrides",
    [
        {"ingestion": {"max_retries": 0}},
        {"ingestion": {"signature_page_size": 0}},
        {"ingestion": {"lookback_days": -1}},
        {"helius": {"requests_per_second": 0}},
        {"classifier": {"quote_mints": []}},
    ],
)
def test_invalid_settings_rejected(overrides):
    with pytest.raises(ValidationError):
        Settings(**overrides)
