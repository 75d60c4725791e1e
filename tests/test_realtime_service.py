"""
PronunciationSession / XAIPronunciationServiceのテスト
"""
import asyncio
import base64
import json
import os
from typing import Any, Dict, List
from unittest.mock import AsyncMock, patch

import pytest
from websockets.exceptions import ConnectionClosedError

from shadowing.models.schemas import NormalizedAudio
from shadowing.services.errors import ProtocolError
from shadowing.services.realtime_service import (
    PronunciationSession,
    SessionState,
    XAIPronunciationService,
    audio_to_base64_chunks,
    build_pronunciation_instructions,
    language_name,
)

FEEDBACK = {
    "weakPronunciation": [{"token": "먹었", "reason": "받침이 약해요", "tip": "ㄱ을 분명히"}],
    "strongPronunciation": [{"token": "밥", "reason": "정확해요"}],
    "shortComment": "전체적으로 좋아요.",
}


def event(event_type: str, **fields: Any) -> bytes:
    """サーバーイベントのフレームを作成"""
    return json.dumps({"type": event_type, **fields}).encode("utf-8")


class FakeConnection:
    """台本どおりにイベントを返すRealtimeチャネル"""

    def __init__(self, frames: List[Any]) -> None:
        self.frames: List[Any] = list(frames)
        self.sent: List[Dict[str, Any]] = []
        self.close_count: int = 0

    async def send(self, event: Dict[str, Any]) -> None:
        self.sent.append(event)

    async def recv_bytes(self) -> bytes:
        if not self.frames:
            # 台本が尽きたら応答のないサーバーとして振る舞う
            await asyncio.Event().wait()
        frame = self.frames.pop(0)
        if isinstance(frame, BaseException):
            raise frame
        return frame

    async def close(self) -> None:
        self.close_count += 1

    def sent_types(self) -> List[str]:
        return [item["type"] for item in self.sent]


def ready_frames() -> List[bytes]:
    return [event("session.created"), event("session.updated")]


def make_session(connection: FakeConnection, **kwargs: Any) -> PronunciationSession:
    async def connector() -> FakeConnection:
        return connection

    options: Dict[str, Any] = {"connect_timeout": 0.5, "response_timeout": 0.5}
    options.update(kwargs)
    return PronunciationSession(connector, "밥 먹었어요?", "밥 먹었어요", **options)


class TestPronunciationSession:
    """PronunciationSessionのテストクラス"""

    @pytest.fixture
    def audio(self):
        """正規化済み音声（約0.3秒）"""
        return NormalizedAudio(pcm_data=b"\x01\x00" * 5000)

    @pytest.mark.asyncio
    async def test_analyze_success(self, audio):
        """ストリーミングした応答を解析するテスト"""
        text = json.dumps(FEEDBACK, ensure_ascii=False)
        connection = FakeConnection(
            ready_frames()
            + [
                event("response.created"),
                event("response.text.delta", delta=text[:20]),
                event("response.text.delta", delta=text[20:]),
                event("response.done", response={"status": "completed"}),
            ]
        )
        session = make_session(connection)

        verdict = await session.analyze(audio)

        assert verdict.available is True
        assert verdict.weak_items[0].token == "먹었"
        assert verdict.weak_items[0].tip == "ㄱ을 분명히"
        assert verdict.strong_items[0].token == "밥"
        assert verdict.comment == "전체적으로 좋아요."
        assert session.state is SessionState.SUCCEEDED
        assert connection.close_count == 1

    @pytest.mark.asyncio
    async def test_sent_events(self, audio):
        """送信イベントの順序のテスト"""
        connection = FakeConnection(
            ready_frames() + [event("response.done", response={"status": "completed"})]
        )
        session = make_session(connection, chunk_size=4096)

        await session.analyze(audio)

        types = connection.sent_types()
        assert types[0] == "session.update"
        assert types[1:4] == ["input_audio_buffer.append"] * 3
        assert types[4:] == ["input_audio_buffer.commit", "response.create"]

        session_config = connection.sent[0]["session"]
        assert session_config["input_audio_format"] == "pcm16"
        assert session_config["turn_detection"] is None
        assert "밥 먹었어요?" in session_config["instructions"]

        streamed = b"".join(
            base64.b64decode(item["audio"])
            for item in connection.sent
            if item["type"] == "input_audio_buffer.append"
        )
        assert streamed == audio.pcm_data

    @pytest.mark.asyncio
    async def test_response_done_output_text(self, audio):
        """response.doneの出力テキストを優先するテスト"""
        final = json.dumps(FEEDBACK, ensure_ascii=False)
        done = {
            "output": [
                {"type": "message", "content": [{"type": "text", "text": final}]}
            ]
        }
        connection = FakeConnection(
            ready_frames()
            + [
                event("response.output_text.delta", delta="{partial"),
                event("response.done", response=done),
            ]
        )

        verdict = await make_session(connection).analyze(audio)

        assert verdict.available is True
        assert verdict.comment == "전체적으로 좋아요."

    @pytest.mark.asyncio
    async def test_skips_non_json_frames(self, audio):
        """JSONでないフレームとtypeのないイベントを読み飛ばすテスト"""
        connection = FakeConnection(
            [b"not json", b'{"no_type": true}']
            + ready_frames()
            + [
                event("response.text.delta", delta=json.dumps(FEEDBACK)),
                event("response.done"),
            ]
        )

        verdict = await make_session(connection).analyze(audio)

        assert verdict.available is True

    @pytest.mark.asyncio
    async def test_response_timeout(self, audio):
        """応答がない場合はタイムアウトして1回だけ閉じるテスト"""
        connection = FakeConnection(ready_frames())
        session = make_session(connection, response_timeout=0.05)

        verdict = await session.analyze(audio)

        assert verdict.available is False
        assert "Response timeout" in session.diagnostic
        assert session.state is SessionState.FAILED
        assert connection.close_count == 1

    @pytest.mark.asyncio
    async def test_session_setup_timeout(self, audio):
        """session.updatedが来ない場合のテスト"""
        connection = FakeConnection([event("session.created")])
        session = make_session(connection, connect_timeout=0.05)

        verdict = await session.analyze(audio)

        assert verdict.available is False
        assert "Session setup timeout" in session.diagnostic
        assert connection.close_count == 1

    @pytest.mark.asyncio
    async def test_connect_timeout(self, audio):
        """接続がタイムアウトした場合のテスト"""

        async def slow_connector():
            await asyncio.sleep(10)

        session = PronunciationSession(slow_connector, "안녕", connect_timeout=0.05)

        verdict = await session.analyze(audio)

        assert verdict.available is False
        assert "Connection timeout" in session.diagnostic
        assert session.state is SessionState.FAILED

    @pytest.mark.asyncio
    async def test_connect_failure(self, audio):
        """接続に失敗した場合のテスト"""
        connector = AsyncMock(side_effect=OSError("connection refused"))
        session = PronunciationSession(connector, "안녕")

        verdict = await session.analyze(audio)

        assert verdict.available is False
        assert "connection refused" in session.diagnostic

    @pytest.mark.asyncio
    async def test_error_event(self, audio):
        """errorイベントで失敗するテスト"""
        connection = FakeConnection(
            ready_frames() + [event("error", error={"message": "invalid audio"})]
        )
        session = make_session(connection)

        verdict = await session.analyze(audio)

        assert verdict.available is False
        assert "Realtime API error" in session.diagnostic
        assert "invalid audio" in session.diagnostic
        assert connection.close_count == 1

    @pytest.mark.asyncio
    async def test_rate_limit_event(self, audio):
        """rate_limitイベントで失敗するテスト"""
        connection = FakeConnection([event("rate_limit")])
        session = make_session(connection)

        verdict = await session.analyze(audio)

        assert verdict.available is False
        assert "Rate limit exceeded" in session.diagnostic
        assert connection.close_count == 1

    @pytest.mark.asyncio
    async def test_connection_closed(self, audio):
        """途中で切断された場合のテスト"""
        connection = FakeConnection(ready_frames() + [ConnectionClosedError(None, None)])
        session = make_session(connection)

        verdict = await session.analyze(audio)

        assert verdict.available is False
        assert "Connection closed unexpectedly" in session.diagnostic
        assert connection.close_count == 1

    @pytest.mark.asyncio
    async def test_unparseable_response_keeps_raw_text(self, audio):
        """解析できない応答は元のテキストを保持するテスト"""
        connection = FakeConnection(
            ready_frames()
            + [event("response.text.delta", delta="발음이 좋아요"), event("response.done")]
        )
        session = make_session(connection)

        verdict = await session.analyze(audio)

        assert verdict.available is False
        assert verdict.raw_text == "발음이 좋아요"
        assert session.state is SessionState.FAILED

    @pytest.mark.asyncio
    async def test_close_error_is_logged(self, audio):
        """切断時のエラーは結果に影響しないテスト"""
        connection = FakeConnection(
            ready_frames() + [event("response.text.delta", delta=json.dumps(FEEDBACK)), event("response.done")]
        )
        connection.close = AsyncMock(side_effect=RuntimeError("already closed"))

        verdict = await make_session(connection).analyze(audio)

        assert verdict.available is True
        connection.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_single_use(self, audio):
        """セッションは1回しか使えないテスト"""
        connection = FakeConnection(ready_frames() + [event("response.done")])
        session = make_session(connection)
        await session.analyze(audio)

        with pytest.raises(RuntimeError):
            await session.analyze(audio)

        assert connection.close_count == 1

    def test_illegal_transition(self):
        """不正な状態遷移のテスト"""
        session = make_session(FakeConnection([]))

        with pytest.raises(ProtocolError):
            session._transition(SessionState.SUCCEEDED)

        session._transition(SessionState.FAILED)
        with pytest.raises(ProtocolError):
            session._transition(SessionState.CONNECTING)

    def test_terminal_states(self):
        """終端状態のテスト"""
        assert SessionState.SUCCEEDED.is_terminal
        assert SessionState.FAILED.is_terminal
        assert not SessionState.STREAMING_AUDIO.is_terminal


class TestRealtimeHelpers:
    """補助関数のテストクラス"""

    def test_audio_to_base64_chunks(self):
        """チャンク分割のテスト"""
        pcm = bytes(range(256)) * 40

        chunks = audio_to_base64_chunks(pcm, 4096)

        assert len(chunks) == 3
        assert b"".join(base64.b64decode(chunk) for chunk in chunks) == pcm

    def test_build_instructions(self):
        """セッション指示のテスト"""
        instructions = build_pronunciation_instructions("커피 주세요", "커피 줘요", "ko-KR")

        assert 'TARGET SENTENCE: "커피 주세요"' in instructions
        assert 'STT TRANSCRIPT: "커피 줘요"' in instructions
        assert "Korean pronunciation coach" in instructions
        assert "weakPronunciation" in instructions

    def test_build_instructions_without_transcript(self):
        """STT結果がない場合のテスト"""
        assert "STT TRANSCRIPT" not in build_pronunciation_instructions("커피 주세요")

    def test_language_name(self):
        """ロケールから言語名を取得するテスト"""
        assert language_name("ko-KR") == "Korean"
        assert language_name("ja-JP") == "Japanese"
        assert language_name("xx-YY") == "Korean"


class TestXAIPronunciationService:
    """XAIPronunciationServiceのテストクラス"""

    @patch.dict(os.environ, {}, clear=True)
    def test_init_failure_no_key(self):
        """APIキーが設定されていない場合の初期化失敗テスト"""
        with pytest.raises(ValueError, match="XAI_API_KEY環境変数が設定されていません"):
            XAIPronunciationService()

    @patch.dict(os.environ, {"XAI_API_KEY": "test_key"})
    def test_create_session_is_fresh(self):
        """分析ごとに新しいセッションを作成するテスト"""
        service = XAIPronunciationService()

        first = service.create_session("안녕")
        second = service.create_session("안녕")

        assert first is not second
        assert first.state is SessionState.CONNECTING

    @pytest.mark.asyncio
    @patch.dict(os.environ, {"XAI_API_KEY": "test_key"})
    async def test_analyze(self):
        """発音分析のテスト"""
        connection = FakeConnection(
            ready_frames()
            + [event("response.text.delta", delta=json.dumps(FEEDBACK)), event("response.done")]
        )
        service = XAIPronunciationService()

        with patch.object(service, "_connect", AsyncMock(return_value=connection)):
            verdict = await service.analyze(
                NormalizedAudio(pcm_data=b"\x00\x00" * 100), "밥 먹었어요?"
            )

        assert verdict.available is True
        assert connection.close_count == 1

    @pytest.mark.asyncio
    @patch.dict(os.environ, {"XAI_API_KEY": "test_key"})
    @patch("shadowing.services.realtime_service.AsyncOpenAI")
    async def test_connect_reuses_client(self, mock_openai):
        """接続ごとにクライアントを作らず1つを共有するテスト"""
        client = mock_openai.return_value
        client.beta.realtime.connect.return_value.enter = AsyncMock(
            side_effect=[FakeConnection([]), FakeConnection([])]
        )
        client.close = AsyncMock()
        service = XAIPronunciationService()

        await service._connect()
        await service._connect()
        await service.close()

        mock_openai.assert_called_once_with(api_key="test_key", base_url="https://api.x.ai/v1")
        assert client.beta.realtime.connect.call_count == 2
        client.beta.realtime.connect.assert_called_with(model="grok-2-public")
        client.close.assert_awaited_once()

    @patch.dict(os.environ, {"XAI_API_KEY": "test_key", "XAI_REALTIME_MODEL": "grok-test"})
    def test_model_from_env(self):
        """環境変数でモデルを上書きするテスト"""
        assert XAIPronunciationService().model == "grok-test"
