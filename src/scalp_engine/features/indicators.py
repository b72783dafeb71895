"""Indicators over intraday candle windows."""

from __future__ import annotations

from typing import Literal

import numpy as np
import pandas as pd  # type: ignore[import-untyped]


def bollinger_bands(close: pd.Series, period: int = 20, multiplier: float = 2.0) -> pd.DataFrame:
    """Middle/upper/lower bands with population standard deviation."""
    mid = close.rolling(window=period, min_periods=period).mean()
    std = close.rolling(window=period, min_periods=period).std(ddof=0)
    return pd.DataFrame(
        {
            "mid": mid,
            "upper": mid + multiplier * std,
            "lower": mid - multiplier * std,
        }
    )


def rsi(close: pd.Series, period: int = 14) -> pd.Series:
    """Wilder RSI in [0, 100]."""
    delta = close.diff()
    gain = delta.clip(lower=0.0)
    loss = -delta.clip(upper=0.0)
    avg_gain = gain.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()
    avg_loss = loss.ewm(alpha=1.0 / period, adjust=False, min_periods=period).mean()
    rs = avg_gain / avg_loss.replace(0.0, np.nan)
    out = 100.0 - 100.0 / (1.0 + rs)
    return out.where(avg_loss != 0.0, 100.0)


def volume_ratio(volume: pd.Series, lookback: int = 20) -> float:
    """Last volume relative to the mean of the preceding ``lookback`` candles."""
    if len(volume) < 2:
        return 1.0
    history = volume.iloc[-lookback - 1 : -1]
    mean = float(history.mean()) if not history.empty else 0.0
    if mean <= 0:
        return 1.0
    return float(volume.iloc[-1]) / mean


def classify_trend(df: pd.DataFrame, fast: int = 9, slow: int = 21) -> Literal["UP", "DOWN", "NEUTRAL"]:
    """Classify short-term trend from fast/slow EMA order and slope."""
    if len(df) < slow + 2:
        return "NEUTRAL"

    ema_fast = _ema(df["close"], fast)
    ema_slow = _ema(df["close"], slow)
    fast_last = float(ema_fast.iloc[-1])
    slow_last = float(ema_slow.iloc[-1])
    fast_prev = float(ema_fast.iloc[-2])

    if fast_last > slow_last and fast_last > fast_prev:
        return "UP"
    if fast_last < slow_last and fast_last < fast_prev:
        return "DOWN"
    return "NEUTRAL"


def _ema(series: pd.Series, period: int) -> pd.Series:
    return series.ewm(span=period, adjust=False).mean()
