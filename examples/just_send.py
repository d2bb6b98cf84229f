import asyncio
import os
import sys

from dotenv import load_dotenv

from nutsync import Nip60Wallet, PaymentSelector, PendingTokenStore, RefundReconciler
from nutsync.provider import RecipientClient
from nutsync.relay import RelayPool
from nutsync.signer import LocalSigner


async def just_send():
    """Pays a recipient from the best mint and prints the resulting token string."""
    load_dotenv()
    nsec = os.getenv("NSEC")
    if not nsec:
        print("Error: NSEC environment variable not set. Please create a .env file.")
        sys.exit(1)

    if len(sys.argv) < 3:
        print("Usage: python just_send.py <amount_to_send> <recipient_base_url>")
        print("Example: python just_send.py 100 https://api.routstr.com")
        sys.exit(1)

    try:
        amount_to_send = int(sys.argv[1])
        if amount_to_send <= 0:
            raise ValueError("Amount to send must be a positive integer.")
    except ValueError as e:
        print(f"Error: Invalid amount provided. {e}")
        sys.exit(1)
    base_url = sys.argv[2]

    mints = [m for m in os.getenv("CASHU_MINTS", "").split(",") if m]
    signer = LocalSigner.from_nsec(nsec)
    pool = RelayPool(["wss://relay.damus.io", "wss://nos.lol"])
    recipient = RecipientClient()

    try:
        async with Nip60Wallet(signer, pool, mints) as wallet:
            print(f"Current wallet balance: {wallet.balance_sats():g} sats")

            pending = PendingTokenStore()
            selector = PaymentSelector(
                wallet, pending, recipient, RefundReconciler(wallet, pending, recipient)
            )
            result = await selector.spend(None, amount_to_send, base_url)
            if not result.ok:
                print(f"Error: {result.error}")
                return
            print(f"\nCashu token for {base_url}:\n{result.token}")
    finally:
        await recipient.aclose()
        await pool.close()


if __name__ == "__main__":
    asyncio.run(just_send())
