"""
同一リクエストの同時実行を1回にまとめるユーティリティ

キー（プロンプト等のハッシュ）ごとに実行中の Future を保持し、
同じキーで後から来た呼び出しは新たに外部APIを叩かず、実行中の結果を待つ。
キャッシュではないため、完了したエントリはすぐに取り除かれる。
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict

logger = logging.getLogger("task_engine.request_deduplication")


class RequestDeduplicator:
    """キー -> 実行中タスク の対応表"""

    def __init__(self):
        self._pending: Dict[str, asyncio.Future] = {}
        self._waiters: Dict[asyncio.Future, int] = {}

    @property
    def in_flight(self) -> int:
        return len(self._pending)

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    async def execute(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        """
        key が実行中ならその結果を待ち、そうでなければ factory() を実行する

        Args:
            key: リクエストの指紋
            factory: 実際の呼び出しを行うコルーチンを返す関数

        Returns:
            factory() の結果（同時実行中の呼び出しはすべて同じ結果を受け取る）
        """
        pending = self._pending.get(key)
        if pending is not None:
            logger.debug("Joining in-flight request %s", key[:16])
            return await self._wait(pending)

        future = asyncio.ensure_future(factory())
        self._pending[key] = future
        future.add_done_callback(lambda _: self._release(key, future))
        return await self._wait(future)

    async def _wait(self, future: asyncio.Future) -> Any:
        # 待機者が1人でも残っていれば共有タスクは止めない。最後の待機者がキャンセルされたら止める
        self._waiters[future] = self._waiters.get(future, 0) + 1
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            if self._waiters[future] == 1 and not future.done():
                logger.debug("Last waiter cancelled, cancelling shared request")
                future.cancel()
            raise
        finally:
            remaining = self._waiters[future] - 1
            if remaining:
                self._waiters[future] = remaining
            else:
                del self._waiters[future]

    def _release(self, key: str, future: asyncio.Future) -> None:
        if self._pending.get(key) is future:
            del self._pending[key]
