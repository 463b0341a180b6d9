#!/usr/bin/env python3
"""Refresh the USSD bank directory from Paystack.

Usage:
    python scripts/update_banks.py                      # writes the packaged banks.json
    python scripts/update_banks.py --out data/banks.json
    python scripts/update_banks.py --dry-run            # print, don't write
"""

import argparse
import asyncio
import json
import logging
import os
import sys

from dotenv import load_dotenv

from tagpay_ussd.bank_updater import fetch_banks, normalize_banks, update_bank_list
from tagpay_ussd.banks import default_bank_list_path


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--out", default=os.getenv("BANK_LIST_PATH") or str(default_bank_list_path()))
    parser.add_argument("--dry-run", action="store_true", help="print the normalised list instead of writing it")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    secret = os.getenv("PAYSTACK_SECRET", "")
    if not secret:
        print("PAYSTACK_SECRET is not set", file=sys.stderr)
        return 1

    try:
        if args.dry_run:
            banks = normalize_banks(asyncio.run(fetch_banks(secret)))
            print(json.dumps(banks, indent=2))
        else:
            count = asyncio.run(update_bank_list(secret, args.out))
            print(f"{count} banks written to {args.out}")
    except Exception as e:
        print(f"Bank list update failed: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
