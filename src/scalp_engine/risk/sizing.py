"""Position sizing and exchange precision rounding.

All functions are pure. Arithmetic runs on ``Decimal`` so that rounding is
idempotent: ``round_quantity(round_quantity(x)) == round_quantity(x)``.
"""

from __future__ import annotations

from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal

from scalp_engine.types import Direction, SymbolPrecision, direction_sign


class SizingError(ValueError):
    """Raised when an order cannot be sized from the given inputs."""


class MinNotionalError(SizingError):
    """Raised when an order (or every clip of it) is below the exchange minimum notional."""

    def __init__(self, symbol: str, notional: float, min_notional: float) -> None:
        super().__init__(f"{symbol}: notional {notional:.4f} below minimum {min_notional:.4f}")
        self.symbol = symbol
        self.notional = notional
        self.min_notional = min_notional


def _d(value: float) -> Decimal:
    return Decimal(str(value))


def _floor_to_step(value: Decimal, step: Decimal) -> Decimal:
    return (value / step).to_integral_value(rounding=ROUND_FLOOR) * step


def round_quantity(quantity: float, precision: SymbolPrecision) -> float:
    """Floor a quantity to the symbol's step size."""
    if quantity <= 0:
        return 0.0
    return float(_floor_to_step(_d(quantity), _d(precision.step_size)))


def round_price(price: float, precision: SymbolPrecision) -> float:
    """Round a price to the nearest tick."""
    if price <= 0:
        return 0.0
    tick = _d(precision.tick_size)
    return float((_d(price) / tick).to_integral_value(rounding=ROUND_HALF_UP) * tick)


def compute_order_quantity(
    balance: float,
    leverage: int,
    price: float,
    precision: SymbolPrecision,
    balance_fraction: float,
) -> float:
    """Size the total entry quantity from available balance.

    notional = balance * balance_fraction * leverage, floored to the step size.
    """
    if balance <= 0:
        raise SizingError("balance_must_be_positive")
    if price <= 0:
        raise SizingError("price_must_be_positive")
    if leverage < 1:
        raise SizingError("leverage_must_be_positive")
    if not 0 < balance_fraction < 1:
        raise SizingError("balance_fraction_must_be_between_0_and_1")

    notional = _d(balance) * _d(balance_fraction) * Decimal(leverage)
    quantity = _floor_to_step(notional / _d(price), _d(precision.step_size))
    order_notional = float(quantity * _d(price))
    if quantity <= 0 or order_notional < precision.min_notional:
        raise MinNotionalError(precision.symbol, order_notional, precision.min_notional)
    return float(quantity)


def plan_entry_clips(
    total_quantity: float,
    price: float,
    precision: SymbolPrecision,
    split_count: int,
) -> list[float]:
    """Split a quantity into equal step-rounded clips.

    The clip count is reduced until every clip meets the minimum notional.
    The last clip absorbs the rounding remainder.
    """
    if split_count < 1:
        raise SizingError("split_count_must_be_positive")
    total = _d(total_quantity)
    step = _d(precision.step_size)
    px = _d(price)
    for count in range(split_count, 0, -1):
        per_clip = _floor_to_step(total / count, step)
        if per_clip <= 0:
            continue
        if float(per_clip * px) < precision.min_notional:
            continue
        last = _floor_to_step(total - per_clip * (count - 1), step)
        return [float(per_clip)] * (count - 1) + [float(last)]
    raise MinNotionalError(precision.symbol, float(total * px), precision.min_notional)


def split_two_tranche(
    total_quantity: float,
    precision: SymbolPrecision,
    first_ratio: float,
) -> tuple[float, float]:
    """Split into a limit tranche and a deferred market tranche."""
    first = round_quantity(total_quantity * first_ratio, precision)
    second = float(_floor_to_step(_d(total_quantity) - _d(first), _d(precision.step_size)))
    return first, second


def entry_ladder_prices(
    price: float,
    side: Direction,
    count: int,
    offset_pct: float,
    precision: SymbolPrecision,
) -> list[float]:
    """Limit prices spread from the current price away from the market.

    Longs rest below the price, shorts above; the first clip sits at the
    price and the last one at ``offset_pct`` percent away.
    """
    sign = direction_sign(side)
    steps = max(count - 1, 1)
    prices = []
    for i in range(count):
        offset = offset_pct * i / steps / 100.0
        prices.append(round_price(price * (1 - sign * offset), precision))
    return prices


def take_profit_ladder(
    open_quantity: float,
    filled_quantity: float,
    avg_price: float,
    side: Direction,
    precision: SymbolPrecision,
    *,
    base_target_quote: float,
    step_quote: float,
    count: int,
    maker_fee: float,
) -> list[tuple[float, float]]:
    """Reduce-only limit ladder for the remainder after the first partial close.

    Clip ``i`` targets ``base_target_quote + step_quote * (i + 1)`` quote profit
    on the filled quantity, grossed up by maker fees on both legs. Returns
    ``(price, quantity)`` pairs ordered from nearest to farthest.
    """
    if open_quantity <= 0 or filled_quantity <= 0 or avg_price <= 0:
        return []
    step = _d(precision.step_size)
    remaining = _d(open_quantity)
    clips = count
    per_clip = Decimal(0)
    while clips > 1:
        per_clip = _floor_to_step(remaining / clips, step)
        if per_clip > 0:
            break
        clips -= 1
    if clips <= 1:
        clips = 1
        per_clip = _floor_to_step(remaining, step)
        if per_clip <= 0:
            return []

    sign = direction_sign(side)
    ladder: list[tuple[float, float]] = []
    for i in range(clips):
        target = base_target_quote + step_quote * (i + 1)
        price_diff = target / filled_quantity + avg_price * 2 * maker_fee
        target_price = round_price(avg_price + sign * price_diff, precision)
        if i == clips - 1:
            quantity = _floor_to_step(remaining - per_clip * (clips - 1), step)
        else:
            quantity = per_clip
        ladder.append((target_price, float(quantity)))
    return ladder
