"""
gridtrader Runner: Main Loop

Wires the collaborators together and drives one GridStrategy per symbol.

Flow per iteration:
1. Tick each symbol sequentially (shared account balance, no overlap)
2. Publish bot state / open cycle gauges
3. Every metrics interval, persist performance snapshots (GLOBAL then per symbol)

Operator commands (--status, --resume, --liquidate, --pause-cycle,
--resume-cycle, --report) run against the same wiring and exit.
"""

import json
import logging
import os
import signal
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from analytics.performance_report import PerformanceReporter
from core.capital import CapitalManager
from core.exchange_ccxt import CcxtBroker
from core.indicators import IndicatorService
from core.models import GLOBAL_SCOPE
from core.position_manager import PositionManager
from core.risk import RiskManager
from core.taapi_client import TaapiClient
from infra.alerting import NotificationService
from infra.metrics import MetricsRecorder
from infra.rate_limiter import SlidingWindowRateLimiter
from infra.state_store import LedgerStore, create_state_store_from_config
from strategy.grid_strategy import GridStrategy, TickResult

logger = logging.getLogger(__name__)

RECENT_CYCLES_IN_STATUS = 5


class TradingLoop:
    """
    Main trading loop orchestrator.

    Responsibilities:
    - Load and validate config
    - Build broker, ledger, indicator, capital, position and risk services
    - Run periodic ticks and metrics snapshots
    - Shut down cleanly on SIGINT/SIGTERM

    ``broker``, ``indicator_source`` and ``ledger`` may be injected (tests,
    tooling); otherwise they are built from app.yaml.
    """

    def __init__(
        self,
        config_dir: str = "config",
        broker=None,
        indicator_source=None,
        ledger: Optional[LedgerStore] = None,
        install_signal_handlers: bool = True,
    ):
        self.config_dir = Path(config_dir)
        from tools.config_validator import validate_all_configs
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if not lines:
                    continue
                logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = self._load_yaml("app.yaml")
        self.policy_config = self._load_yaml("policy.yaml")

        app_cfg = self.app_config.get("app", {}) or {}
        self.mode = str(app_cfg.get("mode", "SANDBOX")).upper()
        self.symbols: List[str] = list(app_cfg.get("symbols", []))

        loop_cfg = self.app_config.get("loop", {}) or {}
        self.loop_interval_seconds = float(loop_cfg.get("interval_seconds", 60))

        monitoring_cfg = self.app_config.get("monitoring", {}) or {}
        self.metrics_interval_seconds = float(monitoring_cfg.get("metrics_interval_minutes", 60)) * 60.0

        self._setup_logging()
        logger.info(f"Starting gridtrader in mode={self.mode}, symbols={self.symbols}")

        exchange_cfg = self.app_config.get("exchange", {}) or {}
        self.quote_currency = exchange_cfg.get("quote_currency", "USDT")
        self.broker = broker or CcxtBroker.from_config(
            exchange_cfg,
            self.mode,
            api_key=os.getenv(exchange_cfg.get("api_key_env", "EXCHANGE_API_KEY")),
            api_secret=os.getenv(exchange_cfg.get("api_secret_env", "EXCHANGE_API_SECRET")),
        )

        self.ledger = ledger or create_state_store_from_config(self.app_config.get("state"))

        self.metrics = MetricsRecorder(
            enabled=bool(monitoring_cfg.get("metrics_enabled", False)),
            port=int(monitoring_cfg.get("metrics_port", 9090)),
        )
        self.notifier = NotificationService.from_config(
            monitoring_cfg.get("notifications"), ledger=self.ledger, policy=self.policy_config
        )
        self.reporter = PerformanceReporter(self.ledger, metrics=self.metrics)

        ind_cfg = self.app_config.get("indicators", {}) or {}
        self.rate_limiter = SlidingWindowRateLimiter(
            max_requests=int(ind_cfg.get("rate_limit_per_window", 1)),
            window_seconds=float(ind_cfg.get("window_seconds", 15)),
        )
        self.indicator_source = indicator_source or TaapiClient(
            secret=os.getenv(ind_cfg.get("secret_env", "TAAPI_SECRET"), ""),
            exchange=ind_cfg.get("exchange", "binance"),
            base_url=ind_cfg.get("base_url", "https://api.taapi.io"),
            timeout=float(ind_cfg.get("timeout_seconds", 30)),
            max_retries=int(exchange_cfg.get("max_retries", 3)),
            rate_limiter=self.rate_limiter,
        )
        self.indicators = IndicatorService(
            self.indicator_source,
            self.policy_config,
            # TaapiClient takes a slot per HTTP attempt; injected sources are throttled here
            rate_limiter=self.rate_limiter if indicator_source is not None else None,
            cache_ttl_seconds=float(ind_cfg.get("cache_ttl_seconds", 60)),
            volume_source=getattr(self.broker, "fetch_volume_ratio", None),
        )

        self.capital = CapitalManager(self.broker, self.policy_config, quote_currency=self.quote_currency)
        self.positions = PositionManager(self.ledger, self.policy_config)
        self.risk = RiskManager(self.ledger, self.broker, self.policy_config, notifier=self.notifier)

        self.strategies: Dict[str, GridStrategy] = {
            symbol: GridStrategy(
                symbol,
                broker=self.broker,
                indicators=self.indicators,
                capital=self.capital,
                positions=self.positions,
                risk=self.risk,
                policy=self.policy_config,
                notifier=self.notifier,
                reporter=self.reporter,
                metrics=self.metrics,
                account_symbols=self.symbols,
            )
            for symbol in self.symbols
        }

        self._last_snapshot: Optional[float] = None
        self._closed = False

        # Shutdown flag
        self._running = True
        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._handle_stop)
            signal.signal(signal.SIGTERM, self._handle_stop)

        logger.info(f"Initialized TradingLoop in {self.mode} mode with {len(self.strategies)} strategies")

    def _load_yaml(self, filename: str) -> dict:
        """Load YAML config file"""
        path = self.config_dir / filename
        with open(path) as f:
            return yaml.safe_load(f) or {}

    def _setup_logging(self) -> None:
        log_cfg = self.app_config.get("logging", {}) or {}
        log_file = log_cfg.get("file", "logs/gridtrader.log")
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

        logging.basicConfig(
            level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )

    def _handle_stop(self, *_):
        logger.warning("Shutdown signal received, stopping after the current iteration")
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def startup(self) -> None:
        """Connect to the exchange, start the exporter and announce the start."""
        self.broker.initialize()
        self.metrics.start()
        self.notifier.notify_bot_started(self.symbols, self.mode)

    def run_cycle(self) -> List[TickResult]:
        """Tick every symbol once, in order. One symbol failing never stops the others."""
        results = []
        for symbol, strategy in self.strategies.items():
            try:
                result = strategy.tick()
            except Exception as e:
                logger.error(f"[{symbol}] Strategy tick raised: {e}", exc_info=True)
                result = TickResult(symbol, "ERROR", error=str(e))
            results.append(result)

        self._publish_state_gauges()
        return results

    def _publish_state_gauges(self) -> None:
        try:
            for state in self.risk.get_all_states():
                self.metrics.record_bot_state(state.scope, state.state.value)
            open_cycles = sum(1 for s in self.symbols if self.positions.get_active_cycle(s) is not None)
            self.metrics.record_open_cycles(open_cycles)
        except Exception as e:
            logger.warning(f"Failed to publish state gauges: {e}")

    def snapshot_metrics(self) -> None:
        self.reporter.snapshot_all(self.symbols)
        self._last_snapshot = time.monotonic()

    def _maybe_snapshot(self) -> None:
        now = time.monotonic()
        if self._last_snapshot is not None and now - self._last_snapshot < self.metrics_interval_seconds:
            return
        try:
            self.snapshot_metrics()
        except Exception as e:
            logger.error(f"Metrics snapshot failed: {e}", exc_info=True)
            self._last_snapshot = now

    def run_forever(self, interval_seconds: Optional[float] = None):
        """
        Run the loop at a fixed cadence until stopped.

        Args:
            interval_seconds: Seconds between iteration starts
        """
        configured_interval = float(interval_seconds) if interval_seconds else self.loop_interval_seconds
        configured_interval = max(configured_interval, 1.0)

        logger.info(f"Starting continuous loop (interval={configured_interval}s)")
        try:
            self.startup()
            while self._running:
                start = time.monotonic()
                self.run_cycle()
                self._maybe_snapshot()
                elapsed = time.monotonic() - start

                sleep_for = max(0.0, configured_interval - elapsed)
                if elapsed > configured_interval:
                    logger.warning(f"Iteration took {elapsed:.2f}s, longer than the {configured_interval}s interval")
                else:
                    logger.debug(f"Iteration took {elapsed:.2f}s, sleeping {sleep_for:.2f}s")

                # Sleep in short slices so a stop signal is honoured promptly
                deadline = time.monotonic() + sleep_for
                while self._running and time.monotonic() < deadline:
                    time.sleep(min(1.0, deadline - time.monotonic()))
        finally:
            self.shutdown()

        logger.info("Trading loop stopped cleanly.")

    def shutdown(self) -> None:
        if self._closed:
            return
        try:
            self.snapshot_metrics()
        except Exception as e:
            logger.error(f"Final metrics snapshot failed: {e}", exc_info=True)
        self.ledger.close()
        self._closed = True
        logger.info("Ledger closed")

    # ------------------------------------------------------------------
    # Operator commands
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        """Bot states, open cycles and performance as a JSON-friendly dict."""
        states = {
            s.scope: {
                "state": s.state.value,
                "peak_balance": str(s.peak_balance),
                "current_balance": str(s.current_balance),
                "max_drawdown_hit": str(s.max_drawdown_hit),
                "paused_until": s.paused_until.isoformat() if s.paused_until else None,
                "consecutive_low_profit_cycles": s.consecutive_low_profit_cycles,
            }
            for s in self.risk.get_all_states()
        }
        cycles = {}
        recent = {}
        for symbol in self.symbols:
            recent[symbol] = [
                {"cycle_id": c.id, "profit": str(c.total_profit), "profit_percent": str(c.profit_percent)}
                for c in self.positions.get_recent_completed_cycles(symbol, RECENT_CYCLES_IN_STATUS)
            ]
            cycle = self.positions.get_active_cycle(symbol)
            if cycle is None:
                cycles[symbol] = None
                continue
            summary = self.positions.get_cycle_summary(cycle.id)
            cycles[symbol] = {
                "cycle_id": summary.cycle_id,
                "status": summary.status.value,
                "buys": f"{summary.buy_count}/{summary.max_buys}",
                "open_positions": len(self.positions.get_open_positions(cycle.id)),
                "invested": str(summary.total_invested),
                "remaining_quantity": str(summary.remaining_quantity),
                "average_price": str(summary.average_price),
                "next_buy_price": str(summary.next_buy_price),
                "target_sell_price": str(summary.target_sell_price),
                "trailing_stop_price": str(summary.trailing_stop_price) if summary.trailing_stop_price else None,
            }
        performance = [self.reporter.get_performance_summary().to_dict()] + [
            self.reporter.get_performance_summary(s).to_dict() for s in self.symbols
        ]
        return {
            "mode": self.mode,
            "bot_states": states,
            "open_cycles": cycles,
            "recent_cycles": recent,
            "performance": performance,
        }

    def write_report(self, output_file: str) -> Path:
        return self.reporter.write_report(self.symbols, output_file=output_file)

    def resume(self, scope: str) -> None:
        symbol = None if scope.upper() == GLOBAL_SCOPE else scope
        self.risk.resume(symbol)

    def liquidate(self, symbol: str) -> TickResult:
        strategy = self._strategy(symbol)
        return strategy.liquidate(reason="operator liquidation")

    def pause_cycle(self, symbol: str) -> None:
        cycle = self._require_cycle(symbol)
        self.positions.pause_cycle(cycle.id)

    def resume_cycle(self, symbol: str) -> None:
        cycle = self._require_cycle(symbol)
        self.positions.resume_cycle(cycle.id)

    def _strategy(self, symbol: str) -> GridStrategy:
        try:
            return self.strategies[symbol]
        except KeyError:
            raise ValueError(f"{symbol} is not a configured symbol ({', '.join(self.symbols)})") from None

    def _require_cycle(self, symbol: str):
        self._strategy(symbol)
        cycle = self.positions.get_active_cycle(symbol)
        if cycle is None:
            raise ValueError(f"{symbol} has no open cycle")
        return cycle


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="gridtrader: grid/DCA cycle bot")
    parser.add_argument("--once", action="store_true", help="Run one iteration and exit")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between iterations (default: loop.interval_seconds)")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--status", action="store_true", help="Print bot states, open cycles and performance, then exit")
    parser.add_argument("--resume", metavar="SCOPE", help="Resume GLOBAL or a symbol scope, then exit")
    parser.add_argument("--liquidate", metavar="SYMBOL", help="Market-sell the open cycle of SYMBOL, then exit")
    parser.add_argument("--pause-cycle", metavar="SYMBOL", help="Pause the open cycle of SYMBOL, then exit")
    parser.add_argument("--resume-cycle", metavar="SYMBOL", help="Resume the paused cycle of SYMBOL, then exit")
    parser.add_argument("--report", metavar="PATH", help="Write a Markdown performance report to PATH, then exit")

    args = parser.parse_args()

    # Create loop (logging configured in __init__)
    loop = TradingLoop(config_dir=args.config_dir)

    if args.status:
        print(json.dumps(loop.status(), indent=2, default=str))
        loop.ledger.close()
        return
    if args.report:
        print(f"Report written to {loop.write_report(args.report)}")
        loop.ledger.close()
        return
    if args.resume:
        loop.resume(args.resume)
        loop.ledger.close()
        return
    if args.pause_cycle:
        loop.pause_cycle(args.pause_cycle)
        loop.ledger.close()
        return
    if args.resume_cycle:
        loop.resume_cycle(args.resume_cycle)
        loop.ledger.close()
        return
    if args.liquidate:
        loop.broker.initialize()
        result = loop.liquidate(args.liquidate)
        print(json.dumps(result.__dict__, indent=2, default=str))
        loop.ledger.close()
        return

    if args.once:
        loop.startup()
        for result in loop.run_cycle():
            logger.info(f"[{result.symbol}] {result.action} executed={result.executed} {result.reason or result.error or ''}")
        loop.shutdown()
    else:
        loop.run_forever(interval_seconds=args.interval)


if __name__ == "__main__":
    main()
