"""
Example 01: Basic Session
=========================

Demonstrates the core flow of SessionService:
- Opening the service as an async context manager
- Creating a session with an initial message
- Sending follow-up messages and waiting for agent replies
- Paging through the log forward and backward with id cursors
- Watching lifecycle events on the event bus

Run:
    python examples/01_basic_session.py
"""

import asyncio

from threadline import EchoResponder, SessionService, ThreadlineEvent


async def main() -> None:
    print("=== Threadline Basic Session Example ===\n")

    async with SessionService.open(
        responder=EchoResponder(prefix="Agent: "),
        db_path="/tmp/threadline_example_01.db",
    ) as service:
        service.subscribe(
            ThreadlineEvent.TOPIC_ASSIGNED,
            lambda event, payload: print(f"[event] topic -> {payload['topic']!r}"),
        )

        session = await service.create_session("cred_demo", "Plan a week in Lisbon")
        print(f"Session created: {session.id}")

        for text in ("Budget is moderate", "We like seafood", "Prefer walking tours"):
            await service.send_message("cred_demo", session.id, text)
        await service.dispatcher.wait_for_pending()

        session = await service.get_session("cred_demo", session.id)
        print(f"Status: {session.status}, messages: {session.message_count}\n")

        print("Forward, 3 at a time:")
        cursor = 0
        while True:
            page = await service.list_messages("cred_demo", session.id, limit=3, after=cursor)
            for m in page:
                print(f"  #{m.id:<2} {m.type:<9} {m.content}")
            if len(page) < 3:
                break
            cursor = page[-1].id

        print("\nNewest two:")
        for m in await service.list_messages("cred_demo", session.id, limit=2, order="desc"):
            print(f"  #{m.id:<2} {m.type:<9} {m.content}")

        status = service.rate_limit_status("cred_demo")
        print(f"\nRate limit: {status.remaining}/{status.limit} left in the {status.window} window")


if __name__ == "__main__":
    asyncio.run(main())
