"""Rolling candle windows and OHLCV normalization."""

from __future__ import annotations

from collections import deque
from dataclasses import asdict

import pandas as pd  # type: ignore[import-untyped]

from scalp_engine.types import Candle

_REQUIRED_COLUMNS = [
    "open_time",
    "open",
    "high",
    "low",
    "close",
    "volume",
]

_KLINE_COLUMNS = [
    "open_time",
    "open",
    "high",
    "low",
    "close",
    "volume",
    "close_time",
    "quote_asset_volume",
    "number_of_trades",
    "taker_buy_base_asset_volume",
    "taker_buy_quote_asset_volume",
    "ignore",
]


def normalize_ohlcv(df: pd.DataFrame) -> pd.DataFrame:
    """Validate/normalize dataframe to the expected OHLCV shape."""
    missing = [col for col in _REQUIRED_COLUMNS if col not in df.columns]
    if missing:
        raise ValueError(f"missing_ohlcv_columns: {','.join(missing)}")

    normalized = df[_REQUIRED_COLUMNS].copy()
    if pd.api.types.is_numeric_dtype(normalized["open_time"]):
        normalized["open_time"] = pd.to_datetime(normalized["open_time"], unit="ms", utc=True)
    else:
        normalized["open_time"] = pd.to_datetime(normalized["open_time"], utc=True)
    numeric_cols = ["open", "high", "low", "close", "volume"]
    for col in numeric_cols:
        normalized[col] = pd.to_numeric(normalized[col], errors="coerce")

    normalized = normalized.dropna(subset=numeric_cols + ["open_time"])
    normalized = normalized.sort_values("open_time", kind="stable").drop_duplicates("open_time", keep="last")
    normalized = normalized.reset_index(drop=True)
    if normalized.empty:
        raise ValueError("normalized_ohlcv_empty")
    return normalized


def klines_to_frame(rows: list[list[object]]) -> pd.DataFrame:
    """Binance REST kline rows to a normalized frame."""
    df = pd.DataFrame(rows, columns=_KLINE_COLUMNS)
    if df.empty:
        raise RuntimeError("empty_ohlcv_response")
    df["open_time"] = pd.to_numeric(df["open_time"])
    return normalize_ohlcv(df)


def resample_ohlcv(df: pd.DataFrame, rule: str) -> pd.DataFrame:
    """Aggregate a normalized frame to a coarser timeframe (e.g. ``"5min"``)."""
    indexed = df.set_index("open_time")
    out = indexed.resample(rule, label="left", closed="left").agg(
        {"open": "first", "high": "max", "low": "min", "close": "last", "volume": "sum"}
    )
    out = out.dropna(subset=["open", "close"]).reset_index()
    return out


class CandleBuffer:
    """Bounded window of candles for one symbol.

    Stream updates for the in-progress candle replace the last entry; a new
    ``open_time`` appends.
    """

    def __init__(self, symbol: str, maxlen: int = 500) -> None:
        self.symbol = symbol
        self._candles: deque[Candle] = deque(maxlen=maxlen)

    def seed(self, df: pd.DataFrame) -> None:
        for row in normalize_ohlcv(df).itertuples(index=False):
            self._candles.append(
                Candle(
                    open_time=int(row.open_time.timestamp() * 1000),
                    open=float(row.open),
                    high=float(row.high),
                    low=float(row.low),
                    close=float(row.close),
                    volume=float(row.volume),
                    closed=True,
                )
            )

    def update(self, candle: Candle) -> bool:
        """Apply a stream update. Returns True when ``candle`` just closed."""
        if self._candles and self._candles[-1].open_time == candle.open_time:
            was_closed = self._candles[-1].closed
            self._candles[-1] = candle
            return candle.closed and not was_closed
        if self._candles and candle.open_time < self._candles[-1].open_time:
            return False
        self._candles.append(candle)
        return candle.closed

    @property
    def last(self) -> Candle | None:
        return self._candles[-1] if self._candles else None

    def closed(self) -> list[Candle]:
        return [candle for candle in self._candles if candle.closed]

    def frame(self, closed_only: bool = True) -> pd.DataFrame:
        candles = self.closed() if closed_only else list(self._candles)
        if not candles:
            return pd.DataFrame(columns=_REQUIRED_COLUMNS)
        df = pd.DataFrame([asdict(candle) for candle in candles])
        df["open_time"] = pd.to_datetime(df["open_time"], unit="ms", utc=True)
        return df[_REQUIRED_COLUMNS]

    def __len__(self) -> int:
        return len(self._candles)
