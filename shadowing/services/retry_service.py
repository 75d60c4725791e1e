"""
リトライサービス
外部APIへのリクエストを指数バックオフ＋ジッターで再試行する
"""

import asyncio
import errno
import logging
import random
import socket
from typing import Any, Awaitable, Callable, FrozenSet, TypeVar

import httpx
import openai
from pydantic import BaseModel

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig(BaseModel):
    """リトライ設定のデータモデル"""

    max_retries: int = 3
    initial_delay: float = 1.0  # 秒
    max_delay: float = 10.0  # 秒
    backoff_multiplier: float = 2.0
    max_jitter: float = 0.2  # 遅延に加算する割合の上限（0.2 = 最大20%）
    retryable_status_codes: FrozenSet[int] = frozenset({429, 500, 502, 503, 504})
    retryable_error_codes: FrozenSet[str] = frozenset(
        {"ECONNRESET", "ETIMEDOUT", "ENOTFOUND", "EAI_AGAIN"}
    )


def _status_of(value: Any) -> int | None:
    """レスポンスまたは例外からHTTPステータスを取り出す"""
    status = getattr(value, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(value, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def _retry_after_of(value: Any) -> float | None:
    """Retry-Afterヘッダー（秒）を取り出す"""
    headers = getattr(value, "headers", None)
    if headers is None:
        headers = getattr(getattr(value, "response", None), "headers", None)
    if headers is None:
        return None
    raw = headers.get("retry-after")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except (TypeError, ValueError):
        # HTTP-date形式には対応しない
        return None


class RetryPolicy:
    """外部呼び出しのリトライを管理するクラス"""

    def __init__(
        self,
        config: RetryConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        jitter_source: Callable[[], float] | None = None,
    ) -> None:
        """
        初期化処理

        Args:
            config: リトライ設定（指定しない場合は既定値）
            sleep: 待機関数（テストでは差し替える）
            jitter_source: [0, 1) の乱数を返す関数
        """
        self.config: RetryConfig = config or RetryConfig()
        self._sleep: Callable[[float], Awaitable[Any]] = sleep or asyncio.sleep
        self._random: Callable[[], float] = jitter_source or random.random

    def calculate_delay(self, attempt: int) -> float:
        """
        待機時間を計算

        Args:
            attempt: 失敗した試行の番号（0始まり）

        Returns:
            待機時間（秒）
        """
        base = self.config.initial_delay * (self.config.backoff_multiplier ** attempt)
        delay = min(self.config.max_delay, base)
        return delay * (1 + self.config.max_jitter * self._random())

    def is_retryable_status(self, status: int) -> bool:
        return status in self.config.retryable_status_codes

    def is_retryable_error(self, error: BaseException) -> bool:
        """
        例外がリトライ可能か判定

        Args:
            error: 発生した例外

        Returns:
            リトライ可能な場合True
        """
        status = _status_of(error)
        if status is not None:
            return self.is_retryable_status(status)

        if isinstance(error, (httpx.TransportError, openai.APIConnectionError)):
            return True
        if isinstance(error, asyncio.TimeoutError):
            return True
        if isinstance(error, socket.gaierror):
            # DNS解決の失敗
            return bool(
                {"ENOTFOUND", "EAI_AGAIN"} & self.config.retryable_error_codes
            )
        if isinstance(error, OSError) and error.errno is not None:
            return errno.errorcode.get(error.errno, "") in self.config.retryable_error_codes

        code = getattr(error, "code", None)
        return isinstance(code, str) and code in self.config.retryable_error_codes

    def _delay_for(self, attempt: int, source: Any) -> float:
        retry_after = _retry_after_of(source)
        if retry_after is not None:
            return min(retry_after, self.config.max_delay)
        return self.calculate_delay(attempt)

    async def execute(self, attempt_fn: Callable[[], Awaitable[T]]) -> T:
        """
        リトライ付きで非同期関数を実行

        成功ステータス以外のレスポンスは、リトライ可能でなければそのまま返す。
        最後の失敗（例外またはレスポンス）は握りつぶさずに呼び出し元へ渡す。

        Args:
            attempt_fn: 1回分の呼び出しを行う関数

        Returns:
            最後に得られたレスポンス
        """
        max_retries = self.config.max_retries
        attempt = 0
        while True:
            try:
                result = await attempt_fn()
            except Exception as e:
                if attempt < max_retries and self.is_retryable_error(e):
                    delay = self._delay_for(attempt, e)
                    logger.warning(
                        "試行 %d でエラー (%s)、%.2f秒後に再試行します",
                        attempt + 1,
                        e,
                        delay,
                    )
                    await self._sleep(delay)
                    attempt += 1
                    continue
                raise

            status = _status_of(result)
            if status is None or 200 <= status < 300:
                if attempt > 0:
                    logger.info("試行 %d で成功しました", attempt + 1)
                return result

            if attempt < max_retries and self.is_retryable_status(status):
                delay = self._delay_for(attempt, result)
                logger.warning(
                    "試行 %d が失敗 (%d)、%.2f秒後に再試行します",
                    attempt + 1,
                    status,
                    delay,
                )
                await self._sleep(delay)
                attempt += 1
                continue

            return result
