"""
Realtime 発音分析サービス
xAI Realtime API（OpenAI互換）に音声を送り、発音フィードバックのJSONを受け取る
"""

import asyncio
import base64
import json
import logging
import os
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Protocol, TypeVar

from openai import AsyncOpenAI
from websockets.exceptions import ConnectionClosed

from shadowing.config import (
    DEFAULT_LOCALE,
    REALTIME_AUDIO_CHUNK_SIZE,
    REALTIME_CONNECT_TIMEOUT_SECONDS,
    REALTIME_RESPONSE_TIMEOUT_SECONDS,
    XAI_BASE_URL,
    XAI_REALTIME_MODEL,
)
from shadowing.models.schemas import (
    NormalizedAudio,
    PronunciationVerdict,
    StrongPronunciation,
    WeakPronunciation,
)
from shadowing.services.errors import ProtocolError, UpstreamError, UpstreamTimeoutError
from shadowing.services.response_parser import parse_response_json

logger = logging.getLogger(__name__)

T = TypeVar("T")

_LANGUAGE_NAMES: Dict[str, str] = {
    "ko": "Korean",
    "ja": "Japanese",
    "en": "English",
    "zh": "Chinese",
}


class RealtimeConnection(Protocol):
    """Realtime APIとの双方向チャネル"""

    async def send(self, event: Dict[str, Any]) -> None: ...

    async def recv_bytes(self) -> bytes: ...

    async def close(self) -> None: ...


RealtimeConnector = Callable[[], Awaitable[RealtimeConnection]]


class SessionState(Enum):
    """発音分析セッションの状態"""

    CONNECTING = "connecting"
    AWAITING_SESSION_READY = "awaiting_session_ready"
    STREAMING_AUDIO = "streaming_audio"
    AWAITING_RESPONSE = "awaiting_response"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.SUCCEEDED, SessionState.FAILED)


_TRANSITIONS: Dict[SessionState, frozenset] = {
    SessionState.CONNECTING: frozenset(
        {SessionState.AWAITING_SESSION_READY, SessionState.FAILED}
    ),
    SessionState.AWAITING_SESSION_READY: frozenset(
        {SessionState.STREAMING_AUDIO, SessionState.FAILED}
    ),
    SessionState.STREAMING_AUDIO: frozenset(
        {SessionState.AWAITING_RESPONSE, SessionState.FAILED}
    ),
    SessionState.AWAITING_RESPONSE: frozenset(
        {SessionState.SUCCEEDED, SessionState.FAILED}
    ),
    SessionState.SUCCEEDED: frozenset(),
    SessionState.FAILED: frozenset(),
}


def language_name(locale: str) -> str:
    """ロケール（例: ko-KR）から言語名を取得"""
    return _LANGUAGE_NAMES.get(locale.split("-")[0].lower(), "Korean")


def build_pronunciation_instructions(
    target_text: str, transcript_text: str = "", locale: str = DEFAULT_LOCALE
) -> str:
    """
    発音コーチ用のセッション指示を作成

    Args:
        target_text: 目標文
        transcript_text: STTの結果（任意、文脈として渡す）
        locale: 目標文のロケール

    Returns:
        セッションのinstructions
    """
    transcript_line = f'STT TRANSCRIPT: "{transcript_text}"\n' if transcript_text else ""
    language = language_name(locale)
    return f"""You are a {language} pronunciation coach. Your ONLY job is to analyze the user's audio pronunciation.

TARGET SENTENCE: "{target_text}"
{transcript_line}
CRITICAL RULES:
1. Listen to the audio and compare pronunciation to the target {language} sentence.
2. Focus on: tone, rhythm, consonant/vowel clarity, intonation.
3. Output ONLY valid JSON, no markdown, no extra text.
4. All feedback in Korean language.
5. Do NOT discuss anything except pronunciation differences.

OUTPUT FORMAT (strict JSON):
{{
  "weakPronunciation": [
    {{"token": "발음이 약한 부분", "reason": "왜 약한지", "tip": "개선 팁"}}
  ],
  "strongPronunciation": [
    {{"token": "잘한 부분", "reason": "왜 좋은지"}}
  ],
  "shortComment": "1-2문장 전체 피드백"
}}

If audio is unclear or silent, return empty lists and say so in shortComment."""


def audio_to_base64_chunks(pcm_data: bytes, chunk_size: int = REALTIME_AUDIO_CHUNK_SIZE) -> List[str]:
    """
    PCMデータを固定サイズに分割してbase64エンコード

    Args:
        pcm_data: PCM16データ
        chunk_size: 1フレームのバイト数

    Returns:
        base64文字列のリスト
    """
    return [
        base64.b64encode(pcm_data[i : i + chunk_size]).decode("ascii")
        for i in range(0, len(pcm_data), chunk_size)
    ]


def _verdict_from_payload(payload: Dict[str, Any]) -> PronunciationVerdict:
    weak = [
        WeakPronunciation(
            token=str(item.get("token", "")),
            reason=str(item.get("reason", "")),
            tip=str(item.get("tip", "")),
        )
        for item in payload.get("weakPronunciation") or []
        if isinstance(item, dict)
    ]
    strong = [
        StrongPronunciation(
            token=str(item.get("token", "")),
            reason=str(item.get("reason", "")),
        )
        for item in payload.get("strongPronunciation") or []
        if isinstance(item, dict)
    ]
    return PronunciationVerdict(
        available=True,
        weak_items=weak,
        strong_items=strong,
        comment=str(payload.get("shortComment") or ""),
    )


class PronunciationSession:
    """
    1回の発音分析だけに使うRealtimeセッション

    接続 → セッション設定 → 音声送信 → 応答待ち の順に進み、
    成功・失敗・タイムアウトのいずれでも必ずチャネルを1回だけ閉じる。
    """

    def __init__(
        self,
        connector: RealtimeConnector,
        target_text: str,
        transcript_text: str = "",
        locale: str = DEFAULT_LOCALE,
        connect_timeout: float = REALTIME_CONNECT_TIMEOUT_SECONDS,
        response_timeout: float = REALTIME_RESPONSE_TIMEOUT_SECONDS,
        chunk_size: int = REALTIME_AUDIO_CHUNK_SIZE,
    ) -> None:
        """
        初期化処理

        Args:
            connector: チャネルを開く非同期関数
            target_text: 目標文
            transcript_text: STTの結果（任意）
            locale: ロケール
            connect_timeout: 接続とセッション確立の期限（秒）
            response_timeout: 音声送信開始から応答完了までの期限（秒）
            chunk_size: 音声フレームのバイト数
        """
        self._connector: RealtimeConnector = connector
        self.target_text: str = target_text
        self.transcript_text: str = transcript_text
        self.locale: str = locale
        self.connect_timeout: float = connect_timeout
        self.response_timeout: float = response_timeout
        self.chunk_size: int = chunk_size

        self.state: SessionState = SessionState.CONNECTING
        self.diagnostic: str | None = None
        self.response_text: str = ""
        self._connection: RealtimeConnection | None = None
        self._started: bool = False
        self._closed: bool = False

    async def analyze(self, audio: NormalizedAudio) -> PronunciationVerdict:
        """
        音声を送信して発音フィードバックを取得

        失敗は例外ではなく available=False の結果として返す。

        Args:
            audio: 正規化済み音声

        Returns:
            発音分析の結果
        """
        if self._started:
            raise RuntimeError("PronunciationSessionは1回の分析にしか使用できません")
        self._started = True

        try:
            verdict = await self._run(audio)
        except ProtocolError as e:
            verdict = self._fail(str(e), raw_text=self.response_text or None)
        except UpstreamError as e:
            verdict = self._fail(str(e))
        except Exception as e:
            logger.exception("発音分析で予期しないエラーが発生しました")
            verdict = self._fail(f"Unexpected error: {e}")
        finally:
            await self._teardown()
        return verdict

    async def _run(self, audio: NormalizedAudio) -> PronunciationVerdict:
        logger.info("Realtime APIに接続しています...")
        self._connection = await self._with_deadline(
            self._connector(), self.connect_timeout, "Connection timeout"
        )
        self._transition(SessionState.AWAITING_SESSION_READY)

        await self._connection.send(self._session_update())
        logger.debug("session.updateを送信しました")
        await self._with_deadline(
            self._await_session_ready(), self.connect_timeout, "Session setup timeout"
        )

        self._transition(SessionState.STREAMING_AUDIO)
        text = await self._with_deadline(
            self._stream_and_collect(audio), self.response_timeout, "Response timeout"
        )

        payload = parse_response_json(text)
        if payload is None:
            raise ProtocolError("Failed to parse pronunciation feedback JSON")

        self._transition(SessionState.SUCCEEDED)
        verdict = _verdict_from_payload(payload)
        logger.info(
            "発音分析完了: weak=%d, strong=%d",
            len(verdict.weak_items),
            len(verdict.strong_items),
        )
        return verdict

    async def _with_deadline(self, awaitable: Awaitable[T], timeout: float, reason: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamTimeoutError(reason) from e

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise ProtocolError(
                "Illegal session transition", f"{self.state.value} -> {new_state.value}"
            )
        logger.debug("セッション状態: %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    def _require_state(self, expected: SessionState) -> None:
        if self.state is not expected:
            raise ProtocolError(
                "Unexpected session state", f"expected {expected.value}, got {self.state.value}"
            )

    def _session_update(self) -> Dict[str, Any]:
        return {
            "type": "session.update",
            "session": {
                "modalities": ["text", "audio"],
                "instructions": build_pronunciation_instructions(
                    self.target_text, self.transcript_text, self.locale
                ),
                "input_audio_format": "pcm16",
                "input_audio_transcription": {"model": "whisper-1"},
                "turn_detection": None,  # コミットは手動で行う
                "temperature": 0.6,
            },
        }

    async def _next_event(self) -> Dict[str, Any]:
        """
        次のイベントを受信（JSONでないフレームは読み飛ばす）

        Returns:
            イベントの辞書
        """
        assert self._connection is not None
        while True:
            try:
                raw = await self._connection.recv_bytes()
            except (ConnectionClosed, ConnectionError, EOFError) as e:
                raise UpstreamError("Connection closed unexpectedly", str(e) or None) from e

            try:
                event = json.loads(raw)
            except (json.JSONDecodeError, UnicodeDecodeError):
                logger.warning("JSONでないフレームを受信しました: %r", raw[:100])
                continue
            if not isinstance(event, dict) or not isinstance(event.get("type"), str):
                logger.warning("typeのないイベントを受信しました")
                continue

            self._raise_for_failure_event(event)
            return event

    @staticmethod
    def _raise_for_failure_event(event: Dict[str, Any]) -> None:
        event_type = event["type"]
        if event_type == "error":
            error = event.get("error")
            message = error.get("message") if isinstance(error, dict) else error
            raise UpstreamError("Realtime API error", str(message or "Unknown API error"))
        if event_type == "rate_limit":
            raise UpstreamError("Rate limit exceeded", status_code=429)

    async def _await_session_ready(self) -> None:
        while True:
            event = await self._next_event()
            if event["type"] == "session.updated":
                logger.debug("セッションの設定が完了しました")
                return
            if event["type"] == "session.created":
                logger.debug("セッションが作成されました")

    async def _stream_and_collect(self, audio: NormalizedAudio) -> str:
        await self._stream_audio(audio)
        self._transition(SessionState.AWAITING_RESPONSE)
        return await self._await_response()

    async def _stream_audio(self, audio: NormalizedAudio) -> None:
        self._require_state(SessionState.STREAMING_AUDIO)
        assert self._connection is not None

        chunks = audio_to_base64_chunks(audio.pcm_data, self.chunk_size)
        logger.info("音声を送信します: %d chunks (%d bytes)", len(chunks), len(audio.pcm_data))
        for chunk in chunks:
            await self._connection.send({"type": "input_audio_buffer.append", "audio": chunk})

        await self._connection.send({"type": "input_audio_buffer.commit"})
        await self._connection.send(
            {
                "type": "response.create",
                "response": {
                    "modalities": ["text"],
                    "instructions": "Analyze the pronunciation in the audio and output JSON as instructed.",
                },
            }
        )
        logger.debug("応答を要求しました")

    async def _await_response(self) -> str:
        self._require_state(SessionState.AWAITING_RESPONSE)
        while True:
            event = await self._next_event()
            event_type = event["type"]

            if event_type in ("response.text.delta", "response.output_text.delta"):
                delta = event.get("delta")
                if isinstance(delta, str):
                    self.response_text += delta

            elif event_type == "response.done":
                final_text = self._text_from_response(event.get("response"))
                if final_text:
                    self.response_text = final_text
                logger.debug("応答テキスト: %s", self.response_text[:200])
                return self.response_text

    @staticmethod
    def _text_from_response(response: Any) -> str:
        """response.doneの出力からテキストを取り出す"""
        if not isinstance(response, dict):
            return ""
        text = ""
        for item in response.get("output") or []:
            if not isinstance(item, dict) or item.get("type") != "message":
                continue
            for content in item.get("content") or []:
                if (
                    isinstance(content, dict)
                    and content.get("type") in ("text", "output_text")
                    and content.get("text")
                ):
                    text = content["text"]
        return text

    def _fail(self, diagnostic: str, raw_text: str | None = None) -> PronunciationVerdict:
        if not self.state.is_terminal:
            self.state = SessionState.FAILED
        self.diagnostic = diagnostic
        logger.warning("発音分析に失敗しました: %s", diagnostic)
        return PronunciationVerdict.unavailable(diagnostic, raw_text)

    async def _teardown(self) -> None:
        """チャネルを閉じる（何度呼ばれても1回だけ）"""
        if self._closed:
            return
        self._closed = True
        if self._connection is None:
            return
        try:
            await self._connection.close()
        except Exception as e:
            logger.warning("Realtime API切断エラー: %s", e)
        finally:
            self._connection = None


class XAIPronunciationService:
    """xAI Realtime APIを使用する発音分析サービスクラス"""

    def __init__(self) -> None:
        """
        初期化処理
        環境変数からAPIキーを取得し、クライアントを作成する（セッションは分析ごとに作成する）
        """
        api_key: str | None = os.getenv("XAI_API_KEY")
        if not api_key:
            raise ValueError("XAI_API_KEY環境変数が設定されていません")
        self.api_key: str = api_key
        self.model: str = os.getenv("XAI_REALTIME_MODEL", XAI_REALTIME_MODEL)
        self.base_url: str = XAI_BASE_URL
        # 全セッションで1つのクライアントを共有する
        self.client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)

    async def _connect(self) -> RealtimeConnection:
        return await self.client.beta.realtime.connect(model=self.model).enter()

    async def close(self) -> None:
        """クライアントのコネクションプールを閉じる"""
        await self.client.close()

    def create_session(
        self, target_text: str, transcript_text: str = "", locale: str = DEFAULT_LOCALE
    ) -> PronunciationSession:
        """
        新しいセッションを作成（再利用しない）

        Args:
            target_text: 目標文
            transcript_text: STTの結果
            locale: ロケール

        Returns:
            未使用のセッション
        """
        return PronunciationSession(
            connector=self._connect,
            target_text=target_text,
            transcript_text=transcript_text,
            locale=locale,
        )

    async def analyze(
        self,
        audio: NormalizedAudio,
        target_text: str,
        transcript_text: str = "",
        locale: str = DEFAULT_LOCALE,
    ) -> PronunciationVerdict:
        """
        発音を分析

        Args:
            audio: 正規化済み音声
            target_text: 目標文
            transcript_text: STTの結果（任意）
            locale: ロケール

        Returns:
            発音分析の結果
        """
        session = self.create_session(target_text, transcript_text, locale)
        return await session.analyze(audio)
