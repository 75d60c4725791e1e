"""
評価サービス
音声認識・テキスト採点・発音分析・文法フィードバックを統合して評価を実行する
"""

import asyncio
import logging

import httpx

from shadowing.config import (
    DEFAULT_LOCALE,
    GRAMMAR_STEP_TIMEOUT_SECONDS,
    MAX_AUDIO_BYTES,
    PRONUNCIATION_STEP_TIMEOUT_SECONDS,
    STT_STEP_TIMEOUT_SECONDS,
)
from shadowing.models.schemas import (
    AlignmentResult,
    EvaluationRequest,
    EvaluationResult,
    GrammarVerdict,
    PronunciationVerdict,
    SttResult,
)
from shadowing.services.audio_service import AudioNormalizer
from shadowing.services.errors import (
    AudioFormatError,
    EvaluationError,
    RequestValidationError,
    ServiceUnavailableError,
    UpstreamError,
    UpstreamTimeoutError,
)
from shadowing.services.grammar_service import GrammarService
from shadowing.services.realtime_service import XAIPronunciationService
from shadowing.services.retry_service import RetryPolicy
from shadowing.services.stt_service import ElevenLabsSTTService
from shadowing.services.text_service import TextAligner, accuracy_percent

logger = logging.getLogger(__name__)


class EvaluationService:
    """シャドーイング評価を統合的に実行するサービスクラス"""

    def __init__(self, retry_policy: RetryPolicy | None = None) -> None:
        """
        初期化処理
        STT・発音分析・文法フィードバックの各サービスを初期化する
        APIキーが設定されていないサービスはNoneになる

        Args:
            retry_policy: 外部API呼び出しのリトライ設定
        """
        self.retry_policy: RetryPolicy = retry_policy or RetryPolicy()
        self.audio_normalizer: AudioNormalizer = AudioNormalizer()
        self.text_aligner: TextAligner = TextAligner()

        try:
            self.stt_service: ElevenLabsSTTService | None = ElevenLabsSTTService(
                retry_policy=self.retry_policy
            )
        except ValueError:
            self.stt_service = None
            logger.warning("ElevenLabs APIの環境変数が設定されていません。音声認識は使用できません。")

        try:
            self.pronunciation_service: XAIPronunciationService | None = XAIPronunciationService()
        except ValueError:
            self.pronunciation_service = None
            logger.warning("xAI APIの環境変数が設定されていません。発音分析は使用できません。")

        try:
            self.grammar_service: GrammarService | None = GrammarService(
                retry_policy=self.retry_policy
            )
        except ValueError:
            self.grammar_service = None
            logger.warning("xAI APIの環境変数が設定されていません。文法フィードバックは使用できません。")

    @staticmethod
    def validate_request(request: EvaluationRequest) -> None:
        """
        リクエストを検証

        Args:
            request: 評価リクエスト

        Raises:
            RequestValidationError: 目標文・音声が空、または音声が大きすぎる場合
        """
        if not request.target_text or not request.target_text.strip():
            raise RequestValidationError("Missing required field: targetText")
        if not request.audio_data:
            raise RequestValidationError(
                'Missing audio file. Please upload a WAV file as "audio".'
            )
        if len(request.audio_data) > MAX_AUDIO_BYTES:
            raise RequestValidationError(
                f"File too large. Maximum: {MAX_AUDIO_BYTES // (1024 * 1024)}MB"
            )

    async def _transcribe(self, request: EvaluationRequest) -> SttResult:
        if self.stt_service is None:
            raise ServiceUnavailableError("STT failed", "ELEVENLABS_API_KEY not configured")
        try:
            return await asyncio.wait_for(
                self.stt_service.transcribe(request.audio_data, request.locale),
                STT_STEP_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamTimeoutError("STT failed", "STT request timed out") from e
        except UpstreamError as e:
            raise UpstreamError("STT failed", e.details or e.message, status_code=e.status_code) from e
        except EvaluationError as e:
            raise UpstreamError("STT failed", e.details or e.message) from e
        except httpx.HTTPError as e:
            raise UpstreamError("STT failed", str(e) or type(e).__name__) from e

    async def _analyze_pronunciation(
        self, request: EvaluationRequest, transcript_text: str
    ) -> PronunciationVerdict:
        """発音分析（失敗してもavailable=Falseとして続行）"""
        if self.pronunciation_service is None:
            logger.info("xAI Realtimeが未設定のため発音分析をスキップします")
            return PronunciationVerdict.unavailable("XAI_API_KEY not configured")
        try:
            audio = await asyncio.to_thread(self.audio_normalizer.normalize, request.audio_data)
            return await asyncio.wait_for(
                self.pronunciation_service.analyze(
                    audio, request.target_text, transcript_text, request.locale
                ),
                PRONUNCIATION_STEP_TIMEOUT_SECONDS,
            )
        except AudioFormatError as e:
            logger.warning("音声の変換に失敗しました（続行します）: %s", e)
            return PronunciationVerdict.unavailable(str(e))
        except asyncio.TimeoutError:
            logger.warning("発音分析がタイムアウトしました（続行します）")
            return PronunciationVerdict.unavailable("Pronunciation analysis timed out")
        except Exception as e:
            logger.warning("発音分析エラー（続行します）: %s", e)
            return PronunciationVerdict.unavailable(str(e))

    async def _analyze_grammar(self, target_text: str, transcript_text: str) -> GrammarVerdict:
        """文法フィードバック（失敗しても空の結果で続行）"""
        if self.grammar_service is None:
            logger.info("xAIが未設定のため文法フィードバックをスキップします")
            return GrammarVerdict()
        try:
            return await asyncio.wait_for(
                self.grammar_service.analyze(target_text, transcript_text),
                GRAMMAR_STEP_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.warning("文法フィードバックがタイムアウトしました（続行します）")
        except Exception as e:
            logger.warning("文法フィードバックエラー（続行します）: %s", e)
        return GrammarVerdict()

    def _score(self, target_text: str, transcript_text: str) -> tuple[AlignmentResult, float]:
        alignment = self.text_aligner.score(target_text, transcript_text)
        wer = self.text_aligner.word_error_rate(target_text, transcript_text)
        return alignment, wer

    async def evaluate(self, request: EvaluationRequest) -> EvaluationResult:
        """
        総合的な評価を実行

        1. リクエストの検証
        2. 音声認識（必須、失敗した場合はエラー）
        3. テキスト採点
        4. 発音分析と文法フィードバック（任意、並行実行）

        Args:
            request: 評価リクエスト

        Returns:
            評価結果（EvaluationResultオブジェクト）

        Raises:
            RequestValidationError: リクエストが不正な場合（400）
            UpstreamError: 音声認識に失敗した場合（503）
            ServiceUnavailableError: 音声認識が未設定の場合（503）
        """
        self.validate_request(request)
        logger.info(
            "評価開始: targetText=%r, audio=%d bytes",
            request.target_text[:30],
            len(request.audio_data),
        )

        stt_result = await self._transcribe(request)
        transcript_text = stt_result.text

        alignment, wer = self._score(request.target_text, transcript_text)
        accuracy = accuracy_percent(alignment.character_error_rate)
        logger.info("採点: accuracy=%d%%, cer=%s", accuracy, alignment.character_error_rate)

        pronunciation, grammar = await asyncio.gather(
            self._analyze_pronunciation(request, transcript_text),
            self._analyze_grammar(request.target_text, transcript_text),
        )

        result = EvaluationResult(
            target_text=request.target_text,
            transcript_text=transcript_text,
            raw_transcript_text=stt_result.raw_text,
            accuracy_percent=accuracy,
            mistake_percent=100 - accuracy,
            word_error_rate=wer,
            alignment=alignment,
            pronunciation=pronunciation,
            grammar=grammar,
        )
        logger.info(
            "評価完了: accuracy=%d%%, pron=%s, grammar=%d mistakes",
            accuracy,
            "yes" if pronunciation.available else "no",
            len(grammar.mistakes),
        )
        return result

    async def evaluate_transcript(self, target_text: str, transcript_text: str) -> EvaluationResult:
        """
        テキストのみで評価（音声・発音分析なし）

        Args:
            target_text: 目標文
            transcript_text: 発話テキスト

        Returns:
            評価結果（pronunciationは常にavailable=False）
        """
        if not target_text or not target_text.strip():
            raise RequestValidationError("Missing required field: targetText")
        if transcript_text is None:
            raise RequestValidationError("Missing required field: transcriptText")

        alignment, wer = self._score(target_text, transcript_text)
        accuracy = accuracy_percent(alignment.character_error_rate)
        grammar = await self._analyze_grammar(target_text, transcript_text)

        return EvaluationResult(
            target_text=target_text,
            transcript_text=transcript_text,
            accuracy_percent=accuracy,
            mistake_percent=100 - accuracy,
            word_error_rate=wer,
            alignment=alignment,
            grammar=grammar,
        )

    async def analyze_pronunciation(
        self, request: EvaluationRequest, transcript_text: str = ""
    ) -> PronunciationVerdict:
        """
        発音分析のみを実行

        Args:
            request: 評価リクエスト（目標文と音声）
            transcript_text: STTの結果（任意）

        Returns:
            発音分析の結果

        Raises:
            RequestValidationError: リクエストが不正な場合
            AudioFormatError: 音声がPCM WAVEでない場合
            ServiceUnavailableError: xAIが未設定の場合
        """
        self.validate_request(request)
        if self.pronunciation_service is None:
            raise ServiceUnavailableError(
                "xAI Realtime not configured", "XAI_API_KEY not configured"
            )
        audio = await asyncio.to_thread(self.audio_normalizer.normalize, request.audio_data)
        try:
            return await asyncio.wait_for(
                self.pronunciation_service.analyze(
                    audio, request.target_text, transcript_text, request.locale or DEFAULT_LOCALE
                ),
                PRONUNCIATION_STEP_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.warning("発音分析がタイムアウトしました")
            return PronunciationVerdict.unavailable("Pronunciation analysis timed out")
