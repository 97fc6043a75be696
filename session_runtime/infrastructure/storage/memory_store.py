from typing import List

from session_runtime.domain.session import Message, MessageStore


class ProjectionMessageStore(MessageStore):
    """直接读投影的 MessageStore。

    进程内没有持久层时使用；只返回有内容的消息，按创建顺序排列。
    """

    def __init__(self, projection):
        self._projection = projection

    async def list_messages(self, session_id: str) -> List[Message]:
        items = [m for m in self._projection.get_messages(session_id) if m.content]
        items.sort(key=lambda m: m.created_at)
        return items
