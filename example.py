import asyncio

from nutsync import LocalSigner, RelayPool, SyncSession
from nutsync.event_store import EventStore


async def main():
    signer = LocalSigner.from_nsec(
        "nsec1vl83hlk8ltz85002gr7qr8mxmsaf8ny8nee95z75vaygetnuvzuqqp5lrx"
    )
    store = EventStore()
    pool = RelayPool(["wss://relay.damus.io", "wss://nos.lol"], store=store)

    async with SyncSession(signer, pool, store) as session:
        print(f"Synced {len(session.conversations)} conversations")

        # Start a new conversation and reply to it
        root = await session.publish_message("demo", "user", "Hello from nutsync")
        await session.publish_message("demo", "assistant", "Hi!", prev_id=root)

        for message in session.assembler.get("demo").messages:
            print(f"{message.role}: {message.text}")


if __name__ == "__main__":
    asyncio.run(main())
