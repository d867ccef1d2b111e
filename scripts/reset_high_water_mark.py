#!/usr/bin/env python3
"""
Reset the GLOBAL peak balance (drawdown high-water mark) in the ledger.

This is useful when:
1. Starting with a new/smaller account balance
2. Recovering from a large historical drawdown
3. Resetting baseline after account withdrawal/transfer

USAGE:
    python scripts/reset_high_water_mark.py [--value VALUE] [--dry-run] [--resume]

OPTIONS:
    --value VALUE    Set the peak to a specific value (default: live account value)
    --dry-run        Show what would change without making changes
    --force          Skip confirmation prompt
    --resume         Also resume GLOBAL if it is paused for drawdown

SAFETY:
    - Creates automatic backup of the SQLite file before modification
    - Verifies the stored value after the update
"""
import argparse
import logging
import os
import shutil
import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional

import yaml

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.exchange_ccxt import CcxtBroker
from core.models import BotStateType
from core.numeric import ZERO, to_decimal
from core.risk import RiskManager, current_drawdown
from infra.state_store import create_state_store_from_config

logger = logging.getLogger(__name__)


def load_config(config_dir: Path, filename: str) -> dict:
    with open(config_dir / filename) as f:
        return yaml.safe_load(f) or {}


def get_current_account_value(app_config: dict) -> Decimal:
    """Account value in quote currency, from the configured exchange."""
    exchange_cfg = app_config.get("exchange", {}) or {}
    app_cfg = app_config.get("app", {}) or {}
    broker = CcxtBroker.from_config(
        exchange_cfg,
        app_cfg.get("mode", "SANDBOX"),
        api_key=os.getenv(exchange_cfg.get("api_key_env", "EXCHANGE_API_KEY")),
        api_secret=os.getenv(exchange_cfg.get("api_secret_env", "EXCHANGE_API_SECRET")),
    )
    broker.initialize()
    return broker.get_total_balance_in_usdt(list(app_cfg.get("symbols", [])))


def backup_state_db(db_path: Path) -> Path:
    """Create timestamped backup of the ledger database."""
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    backup_dir = db_path.parent / "state_backups"
    backup_dir.mkdir(exist_ok=True)

    backup_path = backup_dir / f"ledger_before_hwm_reset_{timestamp}.db"
    shutil.copy2(db_path, backup_path)

    print(f"✅ Backup created: {backup_path}")
    return backup_path


def reset_high_water_mark(
    config_dir: Path,
    value: Optional[Decimal] = None,
    dry_run: bool = False,
    force: bool = False,
    resume: bool = False,
) -> int:
    app_config = load_config(config_dir, "app.yaml")
    policy_config = load_config(config_dir, "policy.yaml")

    db_path = Path((app_config.get("state", {}) or {}).get("path", "data/gridtrader.db"))
    if not db_path.exists():
        print(f"❌ ERROR: Database not found: {db_path}")
        return 1

    ledger = create_state_store_from_config(app_config.get("state"))
    try:
        risk = RiskManager(ledger, broker=None, policy=policy_config)
        state = risk.get_bot_state()
        current_hwm = state.peak_balance
        print(f"\n📊 Current peak balance: ${current_hwm:.2f} (state={state.state.value})")

        if value is not None:
            new_hwm = to_decimal(value)
            print(f"📊 New peak balance (manual): ${new_hwm:.2f}")
        else:
            print("\n🔍 Fetching current account value from the exchange...")
            new_hwm = get_current_account_value(app_config)
            print(f"📊 Current account value: ${new_hwm:.2f}")

        current_dd = current_drawdown(state) * 100 if current_hwm > ZERO else ZERO
        print(f"📉 Current drawdown: {current_dd:.2f}%")

        if dry_run:
            print("\n⚠️  DRY RUN MODE - No changes will be made")
            print(f"\nWould update peak balance: ${current_hwm:.2f} → ${new_hwm:.2f}")
            if resume and state.state is BotStateType.PAUSED_DRAWDOWN:
                print("Would resume GLOBAL from PAUSED_DRAWDOWN")
            return 0

        if not force:
            print("\n" + "=" * 80)
            print("⚠️  WARNING: This will reset the drawdown baseline")
            print("=" * 80)
            print(f"Current peak: ${current_hwm:.2f}")
            print(f"New peak:     ${new_hwm:.2f}")
            print("\nType 'yes' to confirm: ", end="")
            if input().strip().lower() != "yes":
                print("❌ Aborted")
                return 0

        print("\n📦 Creating backup...")
        backup_path = backup_state_db(db_path)

        print("\n🔧 Updating peak balance...")
        risk.reset_peak(new_hwm)
        if resume and state.state is BotStateType.PAUSED_DRAWDOWN:
            risk.resume()
            print("✅ GLOBAL resumed")

        verified = risk.get_bot_state().peak_balance
        if verified != new_hwm:
            print(f"❌ ERROR: Verification failed! Expected ${new_hwm:.2f}, got ${verified:.2f}")
            print(f"Restore from backup: {backup_path}")
            return 1

        print("\n" + "=" * 80)
        print("✅ SUCCESS")
        print("=" * 80)
        print(f"Peak balance reset: ${current_hwm:.2f} → ${new_hwm:.2f}")
        print(f"Backup saved: {backup_path}")
        return 0
    finally:
        ledger.close()


def main():
    parser = argparse.ArgumentParser(
        description="Reset the GLOBAL peak balance used for drawdown",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--value", type=str, help="Set the peak to a specific value (default: live account value)")
    parser.add_argument("--dry-run", action="store_true", help="Show what would change without making changes")
    parser.add_argument("--force", action="store_true", help="Skip confirmation prompt")
    parser.add_argument("--resume", action="store_true", help="Also resume GLOBAL if paused for drawdown")
    parser.add_argument("--config-dir", default=str(Path(__file__).parent.parent / "config"), help="Config directory")

    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    print("=" * 80)
    print("HIGH WATER MARK RESET TOOL")
    print("=" * 80)

    sys.exit(
        reset_high_water_mark(
            Path(args.config_dir),
            value=to_decimal(args.value) if args.value is not None else None,
            dry_run=args.dry_run,
            force=args.force,
            resume=args.resume,
        )
    )


if __name__ == "__main__":
    main()
