"""
gridtrader Analytics: Cycle Performance

Summaries over completed cycles, persisted as periodic metrics snapshots
(global and per symbol), plus a Markdown rendering for operators.

Metrics:
1. Returns: net profit, win rate (profit > 0)
2. Risk: max drawdown seen by the scope, largest invested cycle
3. Behavioral: average cycle duration
"""

import logging
from dataclasses import asdict, dataclass
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional

from core.models import GLOBAL_SCOPE, Cycle, MetricsSnapshot
from core.numeric import HUNDRED, ZERO, safe_divide
from infra.state_store import LedgerStore

logger = logging.getLogger(__name__)


@dataclass
class PerformanceSummary:
    symbol: Optional[str]  # None = all symbols
    total_cycles: int
    win_count: int
    loss_count: int
    win_rate: Decimal  # 0-1
    net_profit: Decimal
    max_drawdown: Decimal
    max_exposure: Decimal
    avg_duration_minutes: Decimal

    def to_dict(self) -> Dict:
        return {k: (str(v) if isinstance(v, Decimal) else v) for k, v in asdict(self).items()}


class PerformanceReporter:
    """
    Args:
        ledger: LedgerStore with completed cycles and bot states
        metrics: optional MetricsRecorder observed on each completion
    """

    def __init__(self, ledger: LedgerStore, metrics=None):
        self.ledger = ledger
        self.metrics = metrics

    def get_performance_summary(self, symbol: Optional[str] = None) -> PerformanceSummary:
        cycles = self.ledger.get_completed_cycles(symbol)
        total = len(cycles)

        wins = sum(1 for c in cycles if (c.total_profit or ZERO) > 0)
        net_profit = sum(((c.total_profit or ZERO) for c in cycles), ZERO)
        max_exposure = max((c.total_invested for c in cycles), default=ZERO)

        durations = [
            Decimal(str((c.closed_at - c.created_at).total_seconds())) / Decimal(60)
            for c in cycles
            if c.closed_at is not None and c.created_at is not None
        ]
        avg_duration = safe_divide(sum(durations, ZERO), Decimal(len(durations)))

        state = self.ledger.get_bot_state(symbol or GLOBAL_SCOPE)
        max_drawdown = state.max_drawdown_hit if state is not None else ZERO

        return PerformanceSummary(
            symbol=symbol,
            total_cycles=total,
            win_count=wins,
            loss_count=total - wins,
            win_rate=safe_divide(Decimal(wins), Decimal(total)),
            net_profit=net_profit,
            max_drawdown=max_drawdown,
            max_exposure=max_exposure,
            avg_duration_minutes=avg_duration,
        )

    def snapshot_metrics(self, symbol: Optional[str] = None) -> MetricsSnapshot:
        """Persist the current summary as a metrics snapshot row."""
        summary = self.get_performance_summary(symbol)
        snapshot = self.ledger.save_metrics_snapshot(
            MetricsSnapshot(
                symbol=symbol,
                total_cycles=summary.total_cycles,
                winning_cycles=summary.win_count,
                losing_cycles=summary.loss_count,
                win_rate=summary.win_rate,
                net_profit=summary.net_profit,
                max_drawdown=summary.max_drawdown,
                max_exposure_hit=summary.max_exposure,
                avg_cycle_duration_minutes=summary.avg_duration_minutes,
            )
        )
        logger.info(
            f"Metrics snapshot [{symbol or GLOBAL_SCOPE}]: cycles={summary.total_cycles} "
            f"win_rate={summary.win_rate * HUNDRED:.1f}% net_profit={summary.net_profit:.2f}"
        )
        return snapshot

    def snapshot_all(self, symbols: List[str]) -> List[MetricsSnapshot]:
        """Global snapshot followed by one per symbol; a failing symbol is skipped."""
        snapshots = [self.snapshot_metrics()]
        for symbol in symbols:
            try:
                snapshots.append(self.snapshot_metrics(symbol))
            except Exception as e:
                logger.error(f"Metrics snapshot failed for {symbol}: {e}", exc_info=True)
        return snapshots

    def record_cycle_completion(self, cycle: Cycle) -> None:
        logger.info(
            f"Cycle {cycle.id} completed for {cycle.symbol}: profit={cycle.total_profit:.2f} "
            f"({cycle.profit_percent:.2f}%), buys={cycle.buy_count}, invested={cycle.total_invested:.2f}"
        )
        if self.metrics is not None:
            self.metrics.record_cycle_completed(cycle.symbol, cycle.total_profit)

    def format_markdown(self, summaries: List[PerformanceSummary], title: str = "Cycle Performance") -> str:
        md = f"# {title}\n\n"
        for summary in summaries:
            md += f"## {summary.symbol or 'All symbols'}\n\n"
            md += f"- **Completed Cycles:** {summary.total_cycles}\n"
            md += f"- **Win Rate:** {summary.win_rate * HUNDRED:.1f}% ({summary.win_count}W / {summary.loss_count}L)\n"
            md += f"- **Net Profit:** ${summary.net_profit:.2f}\n"
            md += f"- **Max Drawdown:** {summary.max_drawdown * HUNDRED:.2f}%\n"
            md += f"- **Largest Cycle Investment:** ${summary.max_exposure:.2f}\n"
            md += f"- **Avg Cycle Duration:** {summary.avg_duration_minutes:.1f} min\n\n"
        return md

    def write_report(self, symbols: List[str], output_file: str = "reports/performance.md") -> Path:
        summaries = [self.get_performance_summary()] + [self.get_performance_summary(s) for s in symbols]
        report_path = Path(output_file)
        report_path.parent.mkdir(parents=True, exist_ok=True)
        with open(report_path, "w") as f:
            f.write(self.format_markdown(summaries))
        logger.info(f"Performance report generated: {report_path}")
        return report_path
