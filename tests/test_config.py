from pathlib import Path

import pytest
from pydantic import ValidationError

from scalp_engine.config import RunMode, Settings


def test_symbols_accept_comma_separated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SYMBOLS", "btcusdt, ethusdt,")
    settings = Settings(journal_dir=str(tmp_path / "j"))
    assert settings.symbols == ["BTCUSDT", "ETHUSDT"]
    assert settings.journal_dir == tmp_path / "j"
    settings.ensure_directories()
    assert settings.journal_dir.is_dir()


def test_live_mode_requires_keys(tmp_path: Path) -> None:
    settings = Settings(mode=RunMode.LIVE, binance_api_key="", binance_api_secret="", journal_dir=tmp_path)
    assert settings.is_live_mode
    assert settings.validate_for_live() == ["BINANCE_API_KEY", "BINANCE_API_SECRET"]

    paper = Settings(journal_dir=tmp_path, binance_api_key="k", binance_api_secret="s")
    assert paper.is_paper_mode
    assert paper.validate_for_live() == []


def test_rejects_unknown_strategy(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        Settings(strategy="martingale", journal_dir=tmp_path)
