"""提示词构造。

- ContextBuilder: 由最近 k 条对话与已确认的研究方向拼出助手提示词。
- build_title_prompt: 首条用户消息后生成会话标题用的提示词。
- build_direction_prompt: 深度研究模式下的方向提案提示词。
"""

from typing import List, Optional, Sequence

from session_runtime.domain.session import Message, MessageStore

ROLE_TAGS = {"user": "U", "assistant": "A"}


def slice_last(items: Sequence, k: int) -> list:
    return list(items[max(0, len(items) - k):])


class ContextBuilder:
    """读取历史消息与会话方向，构造发给模型的提示词列表。"""

    def __init__(self, message_store: MessageStore, projection):
        self._store = message_store
        self._projection = projection

    async def build_assistant_messages(self, session_id: str, user_text: str, window_size: int = 6) -> List[str]:
        msgs = await self._store.list_messages(session_id)
        session = self._projection.get_session(session_id)
        spec = session.direction.spec if session and session.direction.confirmed else ""

        recent = "\n".join(_render(m) for m in slice_last(msgs, window_size))
        header = "\n".join([
            "你是一个严谨而高效的研究助理。",
            f"已确认研究方向：{spec}" if spec else "当前尚未确认具体研究方向。",
            "以下是最近的对话片段（从早到晚）：",
            recent or "(无历史)",
        ])
        return [
            header,
            "\n当前用户消息：",
            user_text,
            "\n请用简洁、直接、可执行的方式回复。",
        ]


def _render(m: Message) -> str:
    return f"{ROLE_TAGS.get(m.role, 'S')}: {m.content}"


def build_title_prompt(user_text: str, locale: str = "zh-CN") -> str:
    lang_hint = "用简体中文输出" if (locale or "").lower().startswith("zh") else "Output in concise Chinese if possible"
    return (
        "你是一个标题助手。阅读下面用户的研究问题或主题，生成一个非常简短的会话标题：\n"
        "要求：\n"
        "- 长度约 6–10 个汉字（不含标点）\n"
        "- 不要句号、引号或括号\n"
        "- 避免敏感词与夸张词\n"
        "- 主题清晰可辨\n"
        f"{lang_hint}\n"
        "\n"
        f'用户输入："""\n{user_text}\n"""\n'
        "\n"
        "只输出标题本身。"
    )


DIRECTION_MARKER = "<direction>"
CLARIFY_FALLBACK = "请补充您的意图，例如目标、范围、时间、来源与输出期望。"


def build_direction_prompt(user_query: str, version: int = 1, feedback: Optional[str] = None) -> str:
    """深度研究的方向提案提示词；version > 1 表示按用户反馈改写上一版。"""

    if version > 1:
        prefix = f"已收到用户反馈，请在保留有效内容的基础上进行改写，并再次给出完整 {DIRECTION_MARKER} 标记与报告：\n{feedback or ''}"
    else:
        prefix = "\n".join([
            "你是一名研究策划助理。你需要判断用户意图是否清晰，如果清晰，则输出一个报告："
            f"仅需在第一行输出一个标记 {DIRECTION_MARKER}，随后紧跟完整报告内容（可用 Markdown 分节、列表、加粗等）。",
            "如果用户意图不清晰，不要输出该标记，而是直接向用户提出澄清问题。",
            "写作建议（可参考）：",
            "- 标题",
            "  - 研究网站（列出重点来源）",
            "- 分析结果（范围、方法、对象、场景的边界）",
            "- 关键问题（3 - 5 个）",
            "- 建议与下一步（3 - 5 条）",
            "- 年份范围",
            "  - 论证依据（简述理由）",
            "",
            "严格要求：",
            f"- 第一行必须是 {DIRECTION_MARKER}",
            "- 内容尽量结构化，使用 Markdown 即可",
        ])
    return "\n".join([prefix, "", "用户意图：", user_query])


def has_direction_marker(text: str) -> bool:
    return DIRECTION_MARKER in (text or "").lower()


def extract_direction_text(full_text: str) -> str:
    """去掉 <direction> 标记及其之前的内容；没有标记时返回去空白的全文。"""

    text = full_text or ""
    i = text.lower().find(DIRECTION_MARKER)
    if i < 0:
        return text.strip()
    return text[i + len(DIRECTION_MARKER):].strip()
