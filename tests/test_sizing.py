from __future__ import annotations

import pytest

from scalp_engine.risk.sizing import (
    MinNotionalError,
    SizingError,
    compute_order_quantity,
    entry_ladder_prices,
    plan_entry_clips,
    round_price,
    round_quantity,
    split_two_tranche,
    take_profit_ladder,
)
from scalp_engine.types import SymbolPrecision

BTC = SymbolPrecision(symbol="BTCUSDT", tick_size=0.01, step_size=0.001, min_notional=5.0)


def test_round_quantity_floors_to_step() -> None:
    assert round_quantity(0.0129, BTC) == 0.012
    assert round_quantity(round_quantity(0.0129, BTC), BTC) == 0.012
    assert round_quantity(-1.0, BTC) == 0.0


def test_round_price_rounds_to_nearest_tick() -> None:
    assert round_price(100.005, BTC) == 100.01
    assert round_price(100.004, BTC) == 100.0
    assert round_price(round_price(100.005, BTC), BTC) == 100.01


def test_compute_order_quantity_uses_balance_fraction_and_leverage() -> None:
    qty = compute_order_quantity(1_000.0, 10, 50_000.0, BTC, 0.95)
    assert qty == pytest.approx(0.19)


def test_compute_order_quantity_rejects_below_min_notional() -> None:
    with pytest.raises(MinNotionalError):
        compute_order_quantity(1.0, 1, 50_000.0, BTC, 0.95)


def test_compute_order_quantity_rejects_bad_inputs() -> None:
    with pytest.raises(SizingError):
        compute_order_quantity(0.0, 10, 50_000.0, BTC, 0.95)
    with pytest.raises(SizingError):
        compute_order_quantity(1_000.0, 10, 50_000.0, BTC, 1.0)


def test_plan_entry_clips_even_split() -> None:
    clips = plan_entry_clips(0.19, 50_000.0, BTC, 5)
    assert len(clips) == 5
    assert sum(clips) == pytest.approx(0.19)
    assert all(c == pytest.approx(0.038) for c in clips)


def test_plan_entry_clips_last_clip_takes_remainder() -> None:
    clips = plan_entry_clips(0.1, 50_000.0, BTC, 3)
    assert clips[:2] == [pytest.approx(0.033), pytest.approx(0.033)]
    assert clips[-1] == pytest.approx(0.034)


def test_plan_entry_clips_reduces_count_for_min_notional() -> None:
    clips = plan_entry_clips(0.003, 2_000.0, BTC, 5)
    assert clips == [pytest.approx(0.003)]
    with pytest.raises(MinNotionalError):
        plan_entry_clips(0.001, 2_000.0, BTC, 5)


def test_split_two_tranche() -> None:
    first, second = split_two_tranche(0.19, BTC, 0.5)
    assert first == pytest.approx(0.095)
    assert second == pytest.approx(0.095)


def test_entry_ladder_prices_rest_away_from_market() -> None:
    longs = entry_ladder_prices(50_000.0, "long", 5, 0.02, BTC)
    assert longs[0] == 50_000.0
    assert longs[-1] == pytest.approx(49_990.0)
    assert longs == sorted(longs, reverse=True)

    shorts = entry_ladder_prices(50_000.0, "short", 5, 0.02, BTC)
    assert shorts[-1] == pytest.approx(50_010.0)
    assert shorts == sorted(shorts)


def test_take_profit_ladder_targets_and_quantities() -> None:
    ladder = take_profit_ladder(
        0.152,
        0.19,
        50_000.0,
        "long",
        BTC,
        base_target_quote=7.0,
        step_quote=3.0,
        count=4,
        maker_fee=0.0002,
    )
    prices = [price for price, _ in ladder]
    assert len(ladder) == 4
    assert prices == sorted(prices)
    # first clip: 10 quote on 0.19 plus maker fees both ways
    assert prices[0] == pytest.approx(50_072.63)
    assert sum(qty for _, qty in ladder) == pytest.approx(0.152)


def test_take_profit_ladder_short_and_small_remainder() -> None:
    ladder = take_profit_ladder(
        0.002,
        0.01,
        50_000.0,
        "short",
        BTC,
        base_target_quote=7.0,
        step_quote=3.0,
        count=4,
        maker_fee=0.0002,
    )
    assert [qty for _, qty in ladder] == [pytest.approx(0.001), pytest.approx(0.001)]
    assert all(price < 50_000.0 for price, _ in ladder)
    assert take_profit_ladder(0.0, 0.01, 50_000.0, "long", BTC, base_target_quote=7, step_quote=3, count=4, maker_fee=0) == []
