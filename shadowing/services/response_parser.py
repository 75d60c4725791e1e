"""
LLM応答からJSONを取り出すユーティリティ
"""

import json
import re
from typing import Any, Dict

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")
_OBJECT_SPAN = re.compile(r"\{[\s\S]*\}")


def _load_object(text: str) -> Dict[str, Any] | None:
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def parse_response_json(text: str | None) -> Dict[str, Any] | None:
    """
    自由形式のテキストからJSONオブジェクトを解析

    1. そのまま解析
    2. マークダウンのコードブロックを取り除いて解析
    3. 最初の "{" から最後の "}" までを取り出して解析

    Args:
        text: モデルの応答テキスト

    Returns:
        解析したオブジェクト、すべて失敗した場合はNone
    """
    if not text:
        return None

    parsed = _load_object(text)
    if parsed is not None:
        return parsed

    cleaned = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", text.strip())).strip()
    parsed = _load_object(cleaned)
    if parsed is not None:
        return parsed

    match = _OBJECT_SPAN.search(text)
    if match:
        return _load_object(match.group(0))
    return None
