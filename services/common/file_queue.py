"""
Common — ファイルベースの永続キュー (Durable File Queue)

ブローカーを使わず、ディレクトリ間のファイル移動 (rename) だけで
メッセージの配信状態を管理する。

  {base}/{topic}/
      pending/      ← enqueue で書き込まれる
      processing/   ← dequeue で rename して「確保 (claim)」する
      completed/    ← complete
      failed/       ← fail (デッドレター)

同一ボリューム内の rename はアトミック。複数コンシューマーが同じ
ファイルを取り合っても、rename に成功するのは 1 つだけ。
負けた側は FileNotFoundError を受け取り、次の候補に進む。
ロックファイルやリーダー選出は使わない。

注意: processing に確保した後でコンシューマーがクラッシュすると、
メッセージは processing に残ったままになる。requeue_stale() で
手動または設定により pending に戻す。
"""

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from .messaging import QueueMessage

logger = logging.getLogger(__name__)

PayloadT = TypeVar("PayloadT", bound=BaseModel)

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"


class MessageQueue(Protocol):
    """ワーカーが依存するキューのインターフェース"""

    async def enqueue(self, message: QueueMessage) -> Path: ...

    async def dequeue(
        self, payload_type: type[PayloadT]
    ) -> tuple[Path | None, QueueMessage[PayloadT] | None]: ...

    def complete(self, processing_path: Path | None) -> None: ...

    def fail(self, processing_path: Path | None) -> None: ...

    def pending_count(self) -> int: ...

    def requeue_stale(self, older_than: float) -> int: ...


def message_filename(message: QueueMessage) -> str:
    """{yyyyMMddHHmmssfff}_{messageId}.json (名前順がほぼ FIFO 順になる)"""
    stamp = message.enqueued_at.strftime("%Y%m%d%H%M%S%f")[:-3]
    return f"{stamp}_{message.message_id}.json"


class FileMessageQueue:
    """トピック 1 つ分のディレクトリキュー"""

    def __init__(self, base_dir: str | os.PathLike, topic: str):
        self.topic = topic
        self.root = Path(base_dir) / topic
        self.pending_dir = self.root / PENDING
        self.processing_dir = self.root / PROCESSING
        self.completed_dir = self.root / COMPLETED
        self.failed_dir = self.root / FAILED

        for d in (
            self.pending_dir,
            self.processing_dir,
            self.completed_dir,
            self.failed_dir,
        ):
            d.mkdir(parents=True, exist_ok=True)

    # ── Producer ─────────────────────────────────

    async def enqueue(self, message: QueueMessage) -> Path:
        """
        メッセージを pending に書き込む。

        一時ファイル (.json 以外の名前) に書いてから rename するので、
        コンシューマーが書きかけのファイルを読むことはない。
        """
        filename = message_filename(message)
        final_path = self.pending_dir / filename
        tmp_path = self.pending_dir / f".{filename}.tmp"
        data = message.model_dump_json(by_alias=True, indent=2)

        await asyncio.to_thread(self._write_atomic, tmp_path, final_path, data)
        logger.info(
            "Enqueued message %s of type %s to %s",
            message.message_id,
            message.message_type,
            final_path,
        )
        return final_path

    @staticmethod
    def _write_atomic(tmp_path: Path, final_path: Path, data: str) -> None:
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.rename(tmp_path, final_path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

    # ── Consumer ─────────────────────────────────

    async def dequeue(
        self, payload_type: type[PayloadT]
    ) -> tuple[Path | None, QueueMessage[PayloadT] | None]:
        """
        pending を名前順に走査し、最初に確保できたメッセージを返す。

        rename に失敗した候補は「競争に負けた」だけなので次に進む。
        何も確保できなければ (None, None)。
        """
        model = QueueMessage[payload_type]

        for candidate in await asyncio.to_thread(self._pending_files):
            processing_path = self.processing_dir / candidate.name
            try:
                await asyncio.to_thread(os.rename, candidate, processing_path)
            except FileNotFoundError:
                # 他のコンシューマーが先に確保した
                continue
            except OSError:
                logger.exception("Could not claim %s, skipping", candidate.name)
                continue

            try:
                raw = await asyncio.to_thread(self._read_claimed, processing_path)
                message = model.model_validate_json(raw)
            except (OSError, ValidationError):
                logger.exception(
                    "Unreadable message %s, moving to failed", candidate.name
                )
                await asyncio.to_thread(self.fail, processing_path)
                continue

            logger.info("Dequeued message %s for processing", candidate.name)
            return processing_path, message

        return None, None

    @staticmethod
    def _read_claimed(processing_path: Path) -> str:
        # mtime を確保時刻にする (requeue_stale の基準)
        os.utime(processing_path)
        return processing_path.read_text(encoding="utf-8")

    def complete(self, processing_path: Path | None) -> None:
        if not processing_path:
            return
        if self._move(processing_path, self.completed_dir):
            logger.info("Completed message %s", Path(processing_path).name)

    def fail(self, processing_path: Path | None) -> None:
        if not processing_path:
            return
        if self._move(processing_path, self.failed_dir):
            logger.warning("Failed message %s", Path(processing_path).name)

    def _move(self, path: Path | str, target_dir: Path) -> bool:
        path = Path(path)
        try:
            os.rename(path, target_dir / path.name)
            return True
        except OSError:
            # メッセージは現在のフォルダに残る (運用で回収)
            logger.exception(
                "Failed to move message %s to %s", path.name, target_dir.name
            )
            return False

    # ── Monitoring / Recovery ────────────────────

    def pending_count(self) -> int:
        return len(self._pending_files())

    def processing_count(self) -> int:
        return len(list(self.processing_dir.glob("*.json")))

    def requeue_stale(self, older_than: float) -> int:
        """
        processing に older_than 秒以上残っているメッセージを pending に戻す。

        戻したメッセージは再配信される (at-least-once)。
        """
        cutoff = time.time() - older_than
        requeued = 0
        for path in sorted(self.processing_dir.glob("*.json")):
            try:
                if path.stat().st_mtime > cutoff:
                    continue
                os.rename(path, self.pending_dir / path.name)
            except FileNotFoundError:
                continue
            except OSError:
                logger.exception("Could not requeue %s", path.name)
                continue
            requeued += 1
            logger.warning("Requeued stale message %s", path.name)
        return requeued

    def _pending_files(self) -> list[Path]:
        return sorted(self.pending_dir.glob("*.json"))
