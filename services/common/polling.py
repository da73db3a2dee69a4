"""
Common — ポーリングループ

ワーカーは 1 プロセス 1 ループの協調的なポーリングで動く:

    ┌─▶ キューに見えているメッセージを 1 件ずつ処理 (最大 batch_size 件)
    │        │
    │   shutdown_event を待ちながら poll_interval 秒スリープ
    └────────┘

- 停止は shutdown_event で通知する。確保済みのメッセージは
  処理し終えてからループを抜ける (途中で中断しない)。
- ループ内のエラーはログに記録し、連続エラー数に応じて
  指数バックオフする。ループ自体は止めない。
"""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel

from .file_queue import MessageQueue
from .messaging import QueueMessage

logger = logging.getLogger(__name__)


def _float(val: str | None, default: float | None) -> float | None:
    try:
        return float(val) if val else default
    except ValueError:
        return default


def _int(val: str | None, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default


@dataclass
class PollingPolicy:
    """ポーリングの間隔・バッチ・バックオフ設定"""
    poll_interval: float = 3.0
    batch_size: int = 10
    max_backoff: float = 60.0
    # None なら processing に残ったメッセージを自動で戻さない
    visibility_timeout: float | None = None

    @classmethod
    def from_env(cls, default_interval: float = 3.0) -> "PollingPolicy":
        return cls(
            poll_interval=_float(os.getenv("POLL_INTERVAL_SECONDS"), default_interval),
            batch_size=_int(os.getenv("POLL_BATCH_SIZE"), 10),
            max_backoff=_float(os.getenv("POLL_MAX_BACKOFF_SECONDS"), 60.0),
            visibility_timeout=_float(
                os.getenv("QUEUE_VISIBILITY_TIMEOUT_SECONDS"), None
            ),
        )

    def delay(self, consecutive_errors: int) -> float:
        if consecutive_errors <= 0:
            return self.poll_interval
        return min(self.poll_interval * 2**consecutive_errors, self.max_backoff)


async def drain_queue(
    queue: MessageQueue,
    payload_type: type[BaseModel],
    handler: Callable[[Path, QueueMessage], Awaitable[None]],
    policy: PollingPolicy,
    shutdown_event: asyncio.Event,
) -> int:
    """
    今見えているメッセージを 1 件ずつ handler に渡す。

    handler は受け取ったメッセージを必ず complete / fail する責任を持つ。
    処理した件数を返す。
    """
    if policy.visibility_timeout is not None:
        queue.requeue_stale(policy.visibility_timeout)

    processed = 0
    while processed < policy.batch_size and not shutdown_event.is_set():
        path, message = await queue.dequeue(payload_type)
        if message is None:
            break
        await handler(path, message)
        processed += 1
    return processed


async def run_polling_loop(
    name: str,
    poll_once: Callable[[], Awaitable[object]],
    policy: PollingPolicy,
    shutdown_event: asyncio.Event,
) -> None:
    """shutdown_event がセットされるまで poll_once を繰り返す。"""
    logger.info("%s started", name)
    consecutive_errors = 0

    while not shutdown_event.is_set():
        try:
            await poll_once()
            consecutive_errors = 0
        except Exception:
            consecutive_errors += 1
            logger.exception("Error in %s polling loop", name)

        try:
            await asyncio.wait_for(
                shutdown_event.wait(), timeout=policy.delay(consecutive_errors)
            )
        except asyncio.TimeoutError:
            pass

    logger.info("%s stopping", name)


async def stop_worker(
    task: asyncio.Task, shutdown_event: asyncio.Event, grace: float = 30.0
) -> None:
    """停止を通知し、処理中のメッセージが終わるのを待つ。"""
    shutdown_event.set()
    try:
        await asyncio.wait_for(task, timeout=grace)
    except asyncio.TimeoutError:
        logger.warning("Worker did not stop within %.0fs, cancelling", grace)
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
