"""Command / Event 共用的信封工具：id、时间戳与 JSON 字段映射。"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Tuple
from uuid import uuid4

from .exceptions import ValidationError


def new_id() -> str:
    return str(uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_ts(raw: Any) -> datetime:
    """解析 ISO 字符串或毫秒时间戳（前端 Date.now() 的格式）。"""

    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return datetime.fromtimestamp(raw / 1000.0, timezone.utc)
    if isinstance(raw, str):
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError(code="INVALID_TIMESTAMP", message=raw) from exc
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValidationError(code="INVALID_TIMESTAMP", message=repr(raw))


# dataclass 字段名 -> (wire 名称, 期望的 JSON 类型)
WireFields = Mapping[str, Tuple[str, type]]


def body_to_wire(obj: Any, fields: WireFields) -> Dict[str, Any]:
    """把 dataclass 的变体字段按 wire 名称导出（None 值省略）。"""

    body: Dict[str, Any] = {}
    for attr, (wire, _) in fields.items():
        value = getattr(obj, attr)
        if value is not None:
            body[wire] = value
    return body


def body_from_wire(
    body: Mapping[str, Any],
    fields: WireFields,
    required: Iterable[str],
    where: str,
) -> Dict[str, Any]:
    """按 wire 名称读取变体字段。

    缺少必填字段（或值为 null）时抛 MISSING_FIELD，类型不符时抛 INVALID_FIELD。
    bool 与 int 严格区分："false"、0 都不会被当成布尔值。
    """

    required = set(required)
    kwargs: Dict[str, Any] = {}
    for attr, (wire, expected) in fields.items():
        value = body.get(wire)
        if value is None:
            if attr in required:
                raise ValidationError(code="MISSING_FIELD", message=f"{where}.{wire} is required")
            continue
        if not _is_json_type(value, expected):
            raise ValidationError(
                code="INVALID_FIELD",
                message=f"{where}.{wire} must be {expected.__name__}, got {type(value).__name__}",
            )
        kwargs[attr] = value
    return kwargs


def _is_json_type(value: Any, expected: type) -> bool:
    if expected is bool:
        return isinstance(value, bool)
    if expected is int:
        return isinstance(value, int) and not isinstance(value, bool)
    return isinstance(value, expected)
