"""Print every synced conversation with its active branch."""

import asyncio

from nutsync.cli import get_local_state, get_settings, get_signer, open_session


async def main():
    settings = get_settings()
    signer = get_signer(settings)
    async with open_session(settings, signer, get_local_state(settings, signer)) as session:
        await session.start()
        for conversation in session.conversations:
            print(f"\n== {conversation.title} ({conversation.id})")
            for message in session.assembler.active_branch(conversation.id):
                print(f"  [{message.role}] {message.text[:80]}")


if __name__ == "__main__":
    asyncio.run(main())
