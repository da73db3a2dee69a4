"""
Common — トレースコンテキストの伝播

W3C Trace Context (traceparent / tracestate) を
HTTP ヘッダー ⇔ エンベロープ間で受け渡す。値は一切変更しない。
"""

from collections.abc import Mapping

from .messaging import QueueMessage

TRACEPARENT = "traceparent"
TRACESTATE = "tracestate"


def trace_context_from_headers(headers: Mapping[str, str]) -> dict[str, str | None]:
    """受信リクエストのヘッダーからエンベロープ用のフィールドを取り出す。"""
    return {
        "trace_parent": headers.get(TRACEPARENT) or None,
        "trace_state": headers.get(TRACESTATE) or None,
    }


def trace_headers(message: QueueMessage) -> dict[str, str]:
    """エンベロープから送信リクエスト用のヘッダーを作る。"""
    headers = {}
    if message.trace_parent:
        headers[TRACEPARENT] = message.trace_parent
    if message.trace_state:
        headers[TRACESTATE] = message.trace_state
    return headers
