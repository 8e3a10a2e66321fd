#!/usr/bin/env python3
"""Run one holder synchronization per contract key and print a summary.

    python sync_holders.py element280 stax --force
"""
import argparse
import logging
import sys

from holder_ledger.config import Settings
from holder_ledger.errors import HolderLedgerError
from holder_ledger.synchronizer import build_service

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Synchronize NFT holder ledgers")
    parser.add_argument("contracts", nargs="+", help="contract keys, e.g. element280 ascendant")
    parser.add_argument("--force", action="store_true", help="full rebuild even when a cached ledger exists")
    parser.add_argument("--wallet", help="only print this wallet (forces a full rebuild)")
    parser.add_argument("--top", type=int, default=10, help="number of top holders to print")
    return parser.parse_args(argv)


def print_summary(key, result, top):
    print(f"🏆 {key}: {result.status} at block {result.last_block}")
    print(f"   holders: {len(result.holders)}  burned: {result.total_burned}  errors: {len(result.error_log)}")
    for holder in result.holders[:top]:
        print(f"   #{holder.rank:<4} {holder.wallet}  total={holder.total:<5} "
              f"multiplier={holder.multiplier_sum:<10g} {holder.percentage:.2f}%")


def main(argv=None, service=None):
    args = parse_args(argv)
    settings = Settings.from_env()
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))

    try:
        service = service or build_service(settings)
    except HolderLedgerError as e:
        print(f"❌ {e}")
        return 1

    failed = 0
    for key in args.contracts:
        try:
            result = service.trigger(key, force_update=args.force, wallet=args.wallet)
        except Exception as e:
            logger.error(f"Synchronization of {key} failed: {e}")
            print(f"⚠️ {key}: {e}")
            failed += 1
            continue
        print_summary(key, result, args.top)
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
