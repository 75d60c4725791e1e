"""
データモデル（スキーマ定義）
"""

import math
from typing import Any, Dict, List, Literal

from pydantic import BaseModel, ConfigDict, Field

from shadowing.config import (
    DEFAULT_LOCALE,
    TARGET_BITS_PER_SAMPLE,
    TARGET_CHANNELS,
    TARGET_SAMPLE_RATE,
)

UnitStatus = Literal["correct", "wrong", "missing", "extra"]


class EvaluationRequest(BaseModel):
    """評価リクエストのデータモデル"""

    target_text: str  # 目標文
    locale: str = DEFAULT_LOCALE  # ロケール
    audio_data: bytes = b""  # 録音データ（RIFF/WAVE）


class WavFormat(BaseModel):
    """WAVEファイルのfmtチャンク情報"""

    audio_format: int  # 1 = PCM
    channels: int
    sample_rate: int
    byte_rate: int
    block_align: int
    bits_per_sample: int


class NormalizedAudio(BaseModel):
    """正規化済み音声（PCM16 モノラル 16kHz）のデータモデル"""

    model_config = ConfigDict(frozen=True)

    pcm_data: bytes
    sample_rate: int = TARGET_SAMPLE_RATE
    channel_count: int = TARGET_CHANNELS
    bit_depth: int = TARGET_BITS_PER_SAMPLE

    @property
    def duration_seconds(self) -> float:
        """音声の長さ（秒）"""
        bytes_per_second = self.sample_rate * self.channel_count * (self.bit_depth // 8)
        return len(self.pcm_data) / bytes_per_second


class AlignmentUnit(BaseModel):
    """差分の1文字分のデータモデル"""

    unit: str  # 文字
    status: UnitStatus
    got: str | None = None  # wrongの場合に実際に発話された文字

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"unit": self.unit, "status": self.status}
        if self.got is not None:
            body["got"] = self.got
        return body


class AlignmentResult(BaseModel):
    """文字レベルの採点結果"""

    edit_distance: int
    character_error_rate: float = Field(ge=0.0, le=1.0)
    units: List[AlignmentUnit] = []
    wrong_units: List[str] = []  # 誤り・欠落した目標文字（重複なし）


class SttResult(BaseModel):
    """音声認識結果"""

    text: str  # UI表示用に整形したテキスト
    raw_text: str = ""  # STTが返した元のテキスト
    language_code: str | None = None
    confidence: float | None = None


class WeakPronunciation(BaseModel):
    token: str = ""
    reason: str = ""
    tip: str = ""


class StrongPronunciation(BaseModel):
    token: str = ""
    reason: str = ""


class PronunciationVerdict(BaseModel):
    """発音分析の結果（available=Falseはエラーではなく正常な終端状態）"""

    available: bool = False
    weak_items: List[WeakPronunciation] = []
    strong_items: List[StrongPronunciation] = []
    comment: str = ""
    diagnostic: str | None = None  # 失敗理由（レスポンスには含めない）
    raw_text: str | None = None  # 解析できなかった応答テキスト

    @classmethod
    def unavailable(cls, diagnostic: str | None = None, raw_text: str | None = None) -> "PronunciationVerdict":
        return cls(available=False, diagnostic=diagnostic, raw_text=raw_text)

    def to_response(self) -> Dict[str, Any]:
        return {
            "available": self.available,
            "weakPronunciation": [item.model_dump() for item in self.weak_items],
            "strongPronunciation": [item.model_dump() for item in self.strong_items],
            "shortComment": self.comment,
        }


class GrammarMistake(BaseModel):
    said: str = ""  # 学生が言った部分
    correct: str = ""  # 正しい表現
    reason: str = ""  # 説明


class GrammarVerdict(BaseModel):
    """文法フィードバックの結果（利用不可の場合は空）"""

    mistakes: List[GrammarMistake] = []
    comment: str = ""

    def to_response(self) -> Dict[str, Any]:
        return {
            "mistakes": [
                {"youSaid": m.said, "correct": m.correct, "why": m.reason}
                for m in self.mistakes
            ],
            "tutorComment": self.comment,
        }


class EvaluationResult(BaseModel):
    """評価結果のデータモデル"""

    target_text: str
    transcript_text: str
    raw_transcript_text: str | None = None
    accuracy_percent: int  # 正確性（0-100）
    mistake_percent: int  # 誤り率（100 - accuracy_percent）
    word_error_rate: float | None = None
    alignment: AlignmentResult
    pronunciation: PronunciationVerdict = Field(default_factory=PronunciationVerdict)
    grammar: GrammarVerdict = Field(default_factory=GrammarVerdict)

    def to_response(self) -> Dict[str, Any]:
        """
        クライアント向けのJSONレスポンスを作成

        Returns:
            レスポンス本文の辞書
        """
        metrics: Dict[str, Any] = {
            "accuracyPercent": self.accuracy_percent,
            "wrongPercent": self.mistake_percent,
            "textAccuracyPercent": self.accuracy_percent,
            "mistakePercent": self.mistake_percent,
            "cer": math.floor(self.alignment.character_error_rate * 1000 + 0.5) / 1000,  # 小数第3位で四捨五入
        }
        if self.word_error_rate is not None:
            metrics["wer"] = self.word_error_rate

        body: Dict[str, Any] = {
            "ok": True,
            "targetText": self.target_text,
            "transcriptText": self.transcript_text,
            "textAccuracyPercent": self.accuracy_percent,
            "mistakePercent": self.mistake_percent,
            "score": self.accuracy_percent,
            "metrics": metrics,
            "diff": {
                "units": [unit.to_response() for unit in self.alignment.units],
                "wrongUnits": list(self.alignment.wrong_units),
                "wrongParts": list(self.alignment.wrong_units),
            },
            "pronunciation": self.pronunciation.to_response(),
            "grammar": self.grammar.to_response(),
        }
        if self.raw_transcript_text is not None:
            body["rawTranscriptText"] = self.raw_transcript_text
        return body
