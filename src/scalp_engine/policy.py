"""Trading policy: every numeric threshold of the order-lifecycle state machine.

Strategy variants are named presets of one ``TradingPolicy``; only the numbers
differ, the code path is the same.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator


class UnknownPresetError(KeyError):
    """Raised when a policy preset name is not registered."""


class TradingPolicy(BaseModel):
    """Immutable set of entry, exit and risk thresholds."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = "custom"

    # entry
    entry_mode: Literal["ladder", "two_tranche"] = "ladder"
    entry_split_count: int = Field(default=5, ge=1, le=20)
    entry_offset_pct: float = Field(default=0.02, ge=0.0, le=1.0)
    two_tranche_first_ratio: float = Field(default=0.5, gt=0.0, lt=1.0)
    entry_timeout_sec: float = Field(default=8.0, gt=0.0, le=120.0)
    partial_wait_sec: float = Field(default=5.0, ge=0.0, le=120.0)
    low_fill_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    max_query_retries: int = Field(default=3, ge=0, le=10)
    entry_cooldown_sec: float = Field(default=30.0, ge=0.0)
    balance_fraction: float = Field(default=0.95, gt=0.0, lt=1.0)
    leverage: int = Field(default=10, ge=1, le=125)
    min_signal_strength: Literal["weak", "medium", "strong"] = "medium"

    # candle confirmation of signals
    confirm_candles: bool = True
    max_signal_wait_candles: int = Field(default=3, ge=1, le=20)

    # exit
    breakeven_fee_buffer_pct: float = Field(default=0.1, ge=0.0, le=5.0)
    stop_loss_pct: float = Field(default=0.15, gt=0.0, le=20.0)
    dynamic_stop_steps: tuple[tuple[float, float], ...] = ()
    max_hold_sec: float = Field(default=300.0, gt=0.0)
    take_profit_quote: float = Field(default=7.0, gt=0.0)
    tp_first_close_ratio: float = Field(default=0.2, gt=0.0, le=1.0)
    tp_ladder_count: int = Field(default=4, ge=1, le=10)
    tp_ladder_step_quote: float = Field(default=3.0, ge=0.0)
    tp_ladder_timeout_sec: float = Field(default=10.0, gt=0.0)
    emergency_imbalance_ratio: float | None = Field(default=None, gt=0.0, le=1.0)
    emergency_opposite_candles: int | None = Field(default=None, ge=1, le=20)

    # fees in percent
    maker_fee_pct: float = Field(default=0.02, ge=0.0, le=1.0)
    taker_fee_pct: float = Field(default=0.05, ge=0.0, le=1.0)

    # daily guards
    daily_max_trades: int = Field(default=50, ge=1)
    daily_max_loss_pct: float = Field(default=3.0, gt=0.0, le=100.0)
    max_consecutive_losses: int = Field(default=5, ge=1)
    loss_cooldown_min: float = Field(default=15.0, ge=0.0)

    @model_validator(mode="after")
    def _check_stop_steps(self) -> "TradingPolicy":
        triggers = [trigger for trigger, _ in self.dynamic_stop_steps]
        if triggers != sorted(triggers):
            raise ValueError("dynamic_stop_steps must be sorted by trigger")
        for trigger, offset in self.dynamic_stop_steps:
            if trigger <= 0 or offset >= trigger:
                raise ValueError("dynamic stop offset must stay below its trigger")
        return self

    @property
    def maker_fee(self) -> float:
        return self.maker_fee_pct / 100.0

    @property
    def taker_fee(self) -> float:
        return self.taker_fee_pct / 100.0

    @property
    def emergency_enabled(self) -> bool:
        return self.emergency_imbalance_ratio is not None or self.emergency_opposite_candles is not None

    def summary(self) -> dict[str, Any]:
        """Compact view for CLI output."""
        return {
            "entry": f"{self.entry_mode} x{self.entry_split_count}, timeout {self.entry_timeout_sec:g}s",
            "low_fill": f"{self.low_fill_threshold:.0%} (buffer {self.breakeven_fee_buffer_pct}%)",
            "stop_loss": f"{self.stop_loss_pct}%" + (" + dynamic" if self.dynamic_stop_steps else ""),
            "take_profit": (
                f"{self.take_profit_quote:g} quote, first {self.tp_first_close_ratio:.0%}, "
                f"ladder {self.tp_ladder_count}"
            ),
            "max_hold": f"{self.max_hold_sec:g}s",
            "leverage": self.leverage,
        }


PRESETS: dict[str, TradingPolicy] = {
    "canonical": TradingPolicy(name="canonical"),
    "limit_rotation": TradingPolicy(
        name="limit_rotation",
        entry_split_count=10,
        entry_timeout_sec=10.0,
        entry_offset_pct=0.05,
        take_profit_quote=5.0,
        tp_ladder_step_quote=2.0,
    ),
    "two_tranche": TradingPolicy(
        name="two_tranche",
        entry_mode="two_tranche",
        entry_split_count=1,
        entry_timeout_sec=10.0,
        two_tranche_first_ratio=0.5,
    ),
    "pyramid": TradingPolicy(
        name="pyramid",
        entry_split_count=5,
        entry_timeout_sec=10.0,
        stop_loss_pct=0.20,
        max_hold_sec=300.0,
        take_profit_quote=10.0,
        dynamic_stop_steps=((0.2, -0.08), (0.4, 0.0), (0.6, 0.15)),
        emergency_imbalance_ratio=0.6,
        emergency_opposite_candles=3,
    ),
}


def list_presets() -> list[str]:
    return sorted(PRESETS)


def get_policy(name: str = "canonical", **overrides: Any) -> TradingPolicy:
    """Return a preset, optionally with validated field overrides."""
    try:
        base = PRESETS[name]
    except KeyError as exc:
        raise UnknownPresetError(name) from exc
    if not overrides:
        return base
    payload = base.model_dump()
    payload.update(overrides)
    try:
        return TradingPolicy.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(f"invalid_policy_override: {exc.errors()[0]['msg']}") from exc
