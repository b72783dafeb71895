"""CLI 入口模块 - Scalp Engine 命令行接口。"""

import asyncio
import sys
from pathlib import Path

import click

from scalp_engine import __version__
from scalp_engine.config import get_settings
from scalp_engine.journal.store import JournalStore
from scalp_engine.policy import UnknownPresetError, get_policy, list_presets
from scalp_engine.session import run_session
from scalp_engine.utils.logging import get_logger, setup_logging


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="显示版本号")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """Scalp Engine - 加密货币合约短线剥头皮引擎。

    信号确认 → 分批限价入场 → 止损/止盈监控 → 平仓记账。
    """
    if version:
        click.echo(f"scalp-engine version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.option("--symbol", "-s", "symbols", multiple=True, help="交易对，可重复指定")
@click.option("--preset", "-p", default=None, help="交易策略参数预设")
@click.option(
    "--strategy",
    type=click.Choice(["bollinger", "momentum", "confluence"]),
    default=None,
    help="信号评估器",
)
@click.option("--enable/--disabled", default=True, help="启动后是否立即允许开仓")
def run(symbols: tuple[str, ...], preset: str | None, strategy: str | None, enable: bool) -> None:
    """运行交易会话。

    订阅行情，按信号开仓并管理持仓，使用 Ctrl+C 停止。
    """
    setup_logging()
    logger = get_logger("scalp_engine.main")
    settings = get_settings()

    updates: dict[str, object] = {}
    if symbols:
        updates["symbols"] = [s.strip().upper() for s in symbols]
    if preset:
        updates["policy_preset"] = preset
    if strategy:
        updates["strategy"] = strategy
    if updates:
        settings = settings.model_copy(update=updates)

    # 确保目录存在
    settings.ensure_directories()

    # 验证配置
    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            logger.error(
                "missing_required_config",
                missing_keys=missing,
                hint="请在 .env 文件中配置必要的 API 密钥",
            )
            sys.exit(1)

    try:
        policy = get_policy(settings.policy_preset)
    except UnknownPresetError as e:
        logger.error("unknown_preset", preset=settings.policy_preset, error=str(e))
        sys.exit(1)

    logger.info(
        "starting_session",
        mode=settings.mode.value,
        symbols=settings.symbols,
        preset=policy.name,
        enabled=enable,
    )

    try:
        asyncio.run(run_session(settings, enable=enable, policy=policy))
    except KeyboardInterrupt:
        logger.info("session_interrupted", message="User interrupted")
        sys.exit(0)
    except Exception as e:
        logger.exception("session_failed", error=str(e))
        sys.exit(1)


@cli.command()
def status() -> None:
    """显示系统状态和配置摘要。"""
    setup_logging()
    settings = get_settings()

    click.echo("=" * 50)
    click.echo("Scalp Engine - Status")
    click.echo("=" * 50)
    click.echo()

    # 运行模式
    mode_marker = "[PAPER]" if settings.is_paper_mode else "[LIVE]"
    mode_text = "Paper Trading" if settings.is_paper_mode else "Live Trading"
    click.echo(f"{mode_marker} Mode: {mode_text}")
    click.echo()

    # API 配置状态
    click.echo("[API Configuration]")
    binance_status = "[OK] Configured" if settings.binance_api_key else "[--] Not configured"
    click.echo(f"   Binance API: {binance_status}")
    click.echo(f"   Binance Testnet: {'Yes' if settings.binance_testnet else 'No'}")
    click.echo()

    # 交易参数
    click.echo("[Trading]")
    click.echo(f"   Symbols: {', '.join(settings.symbols)}")
    click.echo(f"   Strategy: {settings.strategy} ({settings.kline_interval})")
    click.echo(f"   Preset: {settings.policy_preset}")
    try:
        policy = get_policy(settings.policy_preset)
    except UnknownPresetError:
        click.echo("   [ERROR] Unknown preset")
    else:
        for key, value in policy.summary().items():
            click.echo(f"   {key}: {value}")
        click.echo(f"   Daily max trades: {policy.daily_max_trades}")
        click.echo(f"   Daily max loss: {policy.daily_max_loss_pct}%")
        click.echo(f"   Max consecutive losses: {policy.max_consecutive_losses}")
    click.echo()

    # 日志配置
    click.echo("[Logging]")
    click.echo(f"   Log level: {settings.log_level}")
    click.echo(f"   Log format: {settings.log_format.value}")
    click.echo(f"   Journal dir: {settings.journal_dir}")
    click.echo()

    # 验证状态
    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            click.echo("[ERROR] Live mode configuration incomplete, missing:")
            for key in missing:
                click.echo(f"   - {key}")
        else:
            click.echo("[OK] Live mode configuration complete")
    else:
        click.echo("[INFO] Paper mode does not require API keys")

    click.echo()
    click.echo("=" * 50)


@cli.command()
def presets() -> None:
    """列出全部交易策略参数预设。"""
    for name in list_presets():
        policy = get_policy(name)
        click.echo(f"[{name}]")
        for key, value in policy.summary().items():
            click.echo(f"   {key}: {value}")
        click.echo()


@cli.command()
@click.option("--limit", "-n", type=int, default=20, help="显示最近的记录条数")
@click.option("--trades", is_flag=True, default=False, help="只显示已完成的交易")
def journal(limit: int, trades: bool) -> None:
    """显示最近的交易日志。"""
    settings = get_settings()
    if not settings.journal_dir.exists():
        click.echo("No journal yet")
        return
    store = JournalStore(settings.journal_dir)

    if trades:
        records = store.load_trades(limit)
        if not records:
            click.echo("No completed trades")
        for trade in records:
            click.echo(
                f"{trade.closed_at}  {trade.symbol} {trade.side:<5} "
                f"{trade.entry_price:g} -> {trade.exit_price:g}  qty={trade.quantity:g}  "
                f"pnl={trade.realized_pnl:+.4f}  [{trade.reason}]"
            )
        return

    rows = store.load_recent(limit)
    if not rows:
        click.echo("No events")
    for row in rows:
        payload = row.get("payload", {})
        detail = " ".join(f"{k}={v}" for k, v in payload.items() if v is not None)
        click.echo(f"{row.get('timestamp', '')}  {row.get('event_type', ''):<9} {detail}")


@cli.command()
def check() -> None:
    """检查系统依赖和配置。"""
    setup_logging()
    logger = get_logger("scalp_engine.main")

    click.echo("Checking system dependencies...")
    click.echo()

    all_ok = True

    # 检查必要的包
    packages = [
        ("pydantic", "Configuration validation"),
        ("pydantic_settings", "Environment settings"),
        ("binance", "Binance futures client"),
        ("pandas", "Data processing"),
        ("numpy", "Numerical computing"),
        ("structlog", "Structured logging"),
        ("click", "CLI framework"),
        ("tenacity", "Retry mechanism"),
        ("aiohttp", "Async HTTP transport"),
    ]

    for pkg_name, desc in packages:
        try:
            __import__(pkg_name)
            click.echo(f"  [OK] {pkg_name} - {desc}")
        except ImportError:
            click.echo(f"  [MISSING] {pkg_name} - {desc}")
            all_ok = False

    click.echo()

    # 检查配置文件
    env_file = Path(".env")
    if env_file.exists():
        click.echo("  [OK] .env configuration file exists")
    else:
        click.echo("  [WARN] .env file not found (using defaults)")

    click.echo()

    if all_ok:
        click.echo("[OK] All dependency checks passed")
    else:
        click.echo("[ERROR] Some dependencies missing. Run: pip install -e .")

    logger.info("dependency_check_completed", all_ok=all_ok)


# 支持 python -m scalp_engine.main 调用
if __name__ == "__main__":
    cli()
