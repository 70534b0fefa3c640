"""Operator script: reconcile a payout that is stuck in PROCESSING.

Use when a payout webhook never arrived and the periodic poll keeps skipping
the payout (for example because the provider's status endpoint was down).

This script:
1. Loads the payout and its escrow
2. Asks the payout provider for the current status
3. Completes or fails the payout through the escrow engine
4. With --fail "reason", fails the payout without asking the provider

Usage:
    cd backend
    python -m scripts.reconcile_payout 12
    python -m scripts.reconcile_payout 12 --fail "Bank account closed"
"""

import asyncio
import sys

from marketplace.db.session import async_session_factory, engine
from marketplace.services.escrow.engine import EscrowEngine
from marketplace.services.escrow.errors import EscrowError
from marketplace.services.escrow.payouts import PayoutStatus, get_payout
from marketplace.services.gateways.registry import build_registry


async def reconcile_payout(payout_id: int, fail_reason: str | None = None) -> None:
    async with async_session_factory() as db:
        payout = await get_payout(db, payout_id)
        if not payout:
            print(f"No payout found with id={payout_id}")
            return

        print(f"Payout #{payout.id} for escrow #{payout.escrow_id}:")
        print(f"  provider:          {payout.payout_provider}")
        print(f"  gateway_payout_id: {payout.gateway_payout_id}")
        print(f"  amount:            {payout.amount} {payout.currency} (minor units)")
        print(f"  status:            {payout.status}")
        print()

        if payout.status not in (PayoutStatus.PENDING, PayoutStatus.PROCESSING):
            print("Payout is already settled. Nothing to do.")
            return

        escrow_engine = EscrowEngine(db, build_registry())

        try:
            if fail_reason:
                print(f"Failing payout: {fail_reason}")
                escrow, _ = await escrow_engine.fail_payout(payout.id, fail_reason)
                print(f"Done. Escrow #{escrow.id} is back in {escrow.status}.")
                return

            if not payout.gateway_payout_id:
                print("Payout has no provider reference; the provider never accepted it.")
                print('Use --fail "reason" to close it.')
                return

            adapter = escrow_engine.gateways.for_payouts(payout.payout_provider)
            status = await adapter.get_payout_status(payout.gateway_payout_id)
            print(f"Provider reports: {status.state}")

            if status.state == "completed":
                escrow, _ = await escrow_engine.complete_payout(payout.id)
                print(f"Done. Escrow #{escrow.id} is now {escrow.status}.")
            elif status.state == "failed":
                reason = status.failure_reason or "Payout failed at provider"
                escrow, _ = await escrow_engine.fail_payout(payout.id, reason)
                print(f"Payout failed ({reason}). Escrow #{escrow.id} is back in {escrow.status}.")
            else:
                print("Payout is still processing at the provider. Try again later.")
        except EscrowError as exc:
            print(f"Reconciliation failed: {exc.message}")

    await engine.dispose()


def main() -> None:
    args = sys.argv[1:]
    fail_reason = None
    if "--fail" in args:
        idx = args.index("--fail")
        if idx + 1 >= len(args):
            print('Usage: python -m scripts.reconcile_payout <payout_id> [--fail "reason"]')
            sys.exit(1)
        fail_reason = args[idx + 1]
        args = args[:idx] + args[idx + 2:]

    if len(args) != 1:
        print('Usage: python -m scripts.reconcile_payout <payout_id> [--fail "reason"]')
        sys.exit(1)

    payout_id = int(args[0])
    print(f"=== Reconciling payout #{payout_id} ===")
    print()
    asyncio.run(reconcile_payout(payout_id, fail_reason=fail_reason))


if __name__ == "__main__":
    main()
