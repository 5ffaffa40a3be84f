"""
Retrain Models

Scheduled job: retrains each given account's fraud model when it received
enough fresh clicks since the last run window.

Usage:
    python scripts/retrain_models.py ACCOUNT_ID [ACCOUNT_ID ...] [--db PATH]
"""

import argparse
import asyncio
import logging

from dotenv import load_dotenv

load_dotenv()

from clickguard.config import config
from clickguard.scoring import MLService
from clickguard.storage import ClickStore


logging.basicConfig(
    level=config.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("retrain_models")


async def retrain(account_ids, db_path):
    store = ClickStore(db_path)
    ml = MLService(store)
    
    trained = 0
    try:
        for account_id in account_ids:
            result = await ml.auto_update(account_id)
            if result is None:
                print(f"⏭️  {account_id}: skipped")
                continue
            
            trained += 1
            metrics = result.metrics
            print(
                f"✅ {account_id}: model {result.model.model_id} "
                f"(accuracy {metrics.accuracy}%, precision {metrics.precision}%, "
                f"recall {metrics.recall}%)"
            )
    finally:
        store.close()
    
    return trained


def main():
    parser = argparse.ArgumentParser(description="Retrain ClickGuard fraud models")
    parser.add_argument("accounts", nargs="+", help="Account ids to check")
    parser.add_argument("--db", default=config.db_path, help="SQLite database path")
    args = parser.parse_args()
    
    if args.db == ":memory:":
        logger.warning("Retraining against an in-memory database; nothing will be found")
    
    trained = asyncio.run(retrain(args.accounts, args.db))
    print(f"\nRetrained {trained} of {len(args.accounts)} accounts")


if __name__ == "__main__":
    main()
