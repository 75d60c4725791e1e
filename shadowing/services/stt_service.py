"""
ElevenLabs 音声認識（STT）サービス
"""

import logging
import os
from contextlib import nullcontext
from typing import AsyncContextManager

import httpx

from shadowing.config import (
    DEFAULT_LOCALE,
    ELEVENLABS_STT_MODEL,
    ELEVENLABS_STT_URL,
    STT_TIMEOUT_SECONDS,
)
from shadowing.models.schemas import SttResult
from shadowing.services.errors import ProtocolError, UpstreamError
from shadowing.services.retry_service import RetryPolicy
from shadowing.services.text_service import sanitize_transcript

logger = logging.getLogger(__name__)


def language_code_for(locale: str) -> str:
    """ロケール（例: ko-KR）からSTTの言語コード（例: ko）を取得"""
    return (locale or DEFAULT_LOCALE).split("-")[0].lower()


class ElevenLabsSTTService:
    """ElevenLabs Speech-to-Textを使用するサービスクラス"""

    def __init__(
        self,
        retry_policy: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        初期化処理
        環境変数からAPIキーを取得する

        Args:
            retry_policy: リトライ設定（指定しない場合は既定値）
            client: HTTPクライアント（テストで差し替える）
        """
        api_key: str | None = os.getenv("ELEVENLABS_API_KEY")
        if not api_key:
            raise ValueError("ELEVENLABS_API_KEY環境変数が設定されていません")
        self.api_key: str = api_key
        self.model: str = os.getenv("ELEVENLABS_STT_MODEL", ELEVENLABS_STT_MODEL)
        self.url: str = ELEVENLABS_STT_URL
        self.retry_policy: RetryPolicy = retry_policy or RetryPolicy()
        self._client: httpx.AsyncClient | None = client

    def _client_context(self) -> AsyncContextManager[httpx.AsyncClient]:
        if self._client is not None:
            return nullcontext(self._client)
        return httpx.AsyncClient(timeout=STT_TIMEOUT_SECONDS)

    async def _post(
        self, client: httpx.AsyncClient, audio_data: bytes, language_code: str
    ) -> httpx.Response:
        return await client.post(
            self.url,
            headers={"xi-api-key": self.api_key},
            files={"file": ("audio.wav", audio_data, "audio/wav")},
            data={"model_id": self.model, "language_code": language_code},
        )

    async def transcribe(self, audio_data: bytes, locale: str = DEFAULT_LOCALE) -> SttResult:
        """
        音声をテキストに変換

        Args:
            audio_data: WAVEファイルのバイト列
            locale: 発話のロケール

        Returns:
            音声認識結果
        """
        language_code = language_code_for(locale)
        logger.info("ElevenLabs STTを呼び出します (%d bytes, %s)", len(audio_data), language_code)

        async with self._client_context() as client:
            response = await self.retry_policy.execute(
                lambda: self._post(client, audio_data, language_code)
            )

        if not response.is_success:
            raise UpstreamError(
                "STT failed",
                f"ElevenLabs STT error ({response.status_code}): {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ProtocolError("STT failed", "ElevenLabs STT returned invalid JSON") from e

        if not isinstance(payload, dict):
            raise ProtocolError("STT failed", "ElevenLabs STT returned an unexpected response body")
        raw_text = payload.get("text") or ""
        if not isinstance(raw_text, str):
            raise ProtocolError("STT failed", "ElevenLabs STT returned a non-string transcript")
        text = sanitize_transcript(raw_text)
        if raw_text != text:
            logger.debug("STT注釈を除去しました: %r -> %r", raw_text[:50], text[:50])
        logger.info("STT結果: %s", text[:50])

        detected = payload.get("language_code")
        probability = payload.get("language_probability")
        return SttResult(
            text=text,
            raw_text=raw_text,
            language_code=detected if isinstance(detected, str) and detected else language_code,
            confidence=probability if isinstance(probability, (int, float)) else None,
        )
