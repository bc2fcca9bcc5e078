#!/usr/bin/env python3
"""
Deed Retrieval - Entry point script

Fetches the most recent recorded deed for one or more addresses and writes
each PDF to the download directory.
"""

import argparse
import ast
import asyncio

from deedfetch.config import get_settings
from deedfetch.document_processor import save_deed
from deedfetch.errors import FailureRecord
from deedfetch.main import DeedFetchPool


async def process_addresses(addresses, hints=None):
    """
    Retrieve deeds for a list of addresses.

    Args:
        addresses: Addresses to process
        hints: Optional {"county": ..., "state": ...} applied to every address

    Returns:
        List of (address, outcome) pairs
    """
    settings = get_settings()
    pool = DeedFetchPool(size=settings.pool_size)

    print(f"\nProcessing {len(addresses)} address(es) with up to {pool.size} browser(s)...")
    outcomes = await pool.fetch_many(addresses, hints)

    results = list(zip(addresses, outcomes))
    for idx, (address, outcome) in enumerate(results, 1):
        print(f"\n[{idx}/{len(results)}] {address}")
        if isinstance(outcome, FailureRecord):
            retry_note = "retryable" if outcome.retryable else "not retryable"
            print(f"❌ {outcome.kind.value} during {outcome.stage.value} ({retry_note})")
            print(f"   {outcome.detail}")
            if outcome.needs_manual_review:
                print("   🙋 Needs manual follow-up")
            continue

        path = save_deed(outcome, settings.download_path)
        print(f"✅ {outcome.filename}: {outcome.page_count} page(s), {outcome.size_bytes / 1024:.2f} KB")
        print(f"   Saved to {path}")
        if outcome.captcha_encountered:
            print("   ⚠️ A CAPTCHA marker was seen during retrieval")

    succeeded = sum(1 for _, outcome in results if not isinstance(outcome, FailureRecord))
    print(f"\nRetrieved {succeeded} of {len(results)} deed(s)")
    return results


def main():
    """Command-line entry point with support for address list argument."""
    parser = argparse.ArgumentParser(description="Deed Retrieval")
    parser.add_argument(
        "--addresses",
        "-a",
        type=str,
        help="List of addresses to process, formatted as a Python list string. Example: \"['123 Main St, Orlando, FL 32801']\"",
    )
    parser.add_argument(
        "--file", "-f", type=str, help="Path to a text file containing addresses, one per line"
    )
    parser.add_argument("--county", "-c", type=str, help="County hint applied to every address")
    parser.add_argument("--state", "-s", type=str, help="State hint applied to every address")

    args = parser.parse_args()

    addresses = []

    if args.file:
        try:
            with open(args.file, "r") as f:
                addresses.extend(line.strip() for line in f if line.strip())
        except OSError as e:
            print(f"Error reading address file: {e}")
            return []

    if args.addresses:
        try:
            parsed = ast.literal_eval(args.addresses)
            if isinstance(parsed, str):
                parsed = [parsed]
            if not isinstance(parsed, list):
                raise ValueError("Addresses must be provided as a list")
            addresses.extend(parsed)
        except (ValueError, SyntaxError) as e:
            print(f"Error parsing addresses: {e}")
            print("Make sure the addresses are formatted as a Python list string.")
            print("Example: \"['123 Main St, Orlando, FL 32801']\"")
            return []

    if not addresses:
        parser.error("Provide --addresses or --file")

    hints = {"county": args.county, "state": args.state} if args.county else None
    return asyncio.run(process_addresses(addresses, hints))


if __name__ == "__main__":
    main()
