"""Minimal demonstration of the session runtime."""

import asyncio

from session_runtime.api import service


async def main() -> None:
    session_id = await service.create_session()
    question = "检索增强生成在医学问答中有哪些主流评测方法？"
    await service.send_message(session_id, question)
    await service.get_runtime().wait_idle()

    session = service.get_sessions()[0]
    print("Session:", session["title"])
    for message in service.get_messages(session_id):
        print(f"{message['role']} [{message['status']}]:", message["content"] or message.get("error", ""))


if __name__ == "__main__":
    asyncio.run(main())
