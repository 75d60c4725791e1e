"""
文法フィードバックサービス
xAI（OpenAI互換API）のテキストモデルで目標文と発話を比較する
"""

import logging
import os
from typing import Any, Dict, List

from openai import AsyncOpenAI

from shadowing.config import GRAMMAR_TIMEOUT_SECONDS, XAI_BASE_URL, XAI_GRAMMAR_MODEL
from shadowing.models.schemas import GrammarMistake, GrammarVerdict
from shadowing.services.errors import ProtocolError, UpstreamError
from shadowing.services.response_parser import parse_response_json
from shadowing.services.retry_service import RetryPolicy

logger = logging.getLogger(__name__)

GRAMMAR_SYSTEM_PROMPT = """You are a Korean language tutor analyzing a student's spoken text.

CRITICAL RULES:
1. Compare TARGET text with what the STUDENT said (transcript)
2. Find grammar/vocabulary mistakes
3. All feedback in Korean
4. Output ONLY valid JSON, no markdown

OUTPUT FORMAT:
{
  "mistakes": [
    {
      "youSaid": "학생이 말한 부분",
      "correct": "올바른 표현",
      "why": "간단한 설명 (max 50자)"
    }
  ],
  "tutorComment": "격려하는 피드백 1-2문장"
}

If perfect match, return:
{
  "mistakes": [],
  "tutorComment": "완벽해요! 정확하게 말했습니다."
}"""


def build_grammar_user_prompt(target_text: str, transcript_text: str) -> str:
    return (
        f'TARGET: "{target_text}"\n'
        f'STUDENT SAID: "{transcript_text}"\n\n'
        "Find grammar/vocabulary differences. Output JSON only."
    )


def _first_text(item: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = item.get(key)
        if value:
            return str(value)
    return ""


def verdict_from_payload(payload: Dict[str, Any]) -> GrammarVerdict:
    """
    モデルのJSONを文法フィードバックに変換

    旧形式のキー（grammarMistakes、reasonKo、commentKoなど）も受け付ける。

    Args:
        payload: 解析済みのJSON

    Returns:
        文法フィードバック
    """
    raw_mistakes = payload.get("mistakes")
    if raw_mistakes is None:
        raw_mistakes = payload.get("grammarMistakes")

    mistakes: List[GrammarMistake] = [
        GrammarMistake(
            said=_first_text(item, "youSaid", "said", "wrong"),
            correct=_first_text(item, "correct"),
            reason=_first_text(item, "why", "reason", "reasonKo", "reason_ko"),
        )
        for item in raw_mistakes or []
        if isinstance(item, dict)
    ]
    comment = _first_text(payload, "tutorComment", "commentKo", "comment_ko", "comment")
    return GrammarVerdict(mistakes=mistakes, comment=comment)


class GrammarService:
    """xAI Grokを使用する文法フィードバックのサービスクラス"""

    def __init__(
        self,
        retry_policy: RetryPolicy | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        """
        初期化処理
        環境変数からAPIキーを取得し、OpenAI互換クライアントを初期化する

        Args:
            retry_policy: リトライ設定（指定しない場合は既定値）
            client: OpenAI互換クライアント（テストで差し替える）
        """
        api_key: str | None = os.getenv("XAI_API_KEY")
        if not api_key:
            raise ValueError("XAI_API_KEY環境変数が設定されていません")
        # リトライはRetryPolicyで行うため、SDK側のリトライは無効にする
        self.client: AsyncOpenAI = client or AsyncOpenAI(
            api_key=api_key,
            base_url=XAI_BASE_URL,
            timeout=GRAMMAR_TIMEOUT_SECONDS,
            max_retries=0,
        )
        self.model: str = os.getenv("XAI_MODEL", XAI_GRAMMAR_MODEL)
        self.retry_policy: RetryPolicy = retry_policy or RetryPolicy()

    async def analyze(self, target_text: str, transcript_text: str) -> GrammarVerdict:
        """
        目標文と発話を比較して文法・語彙の誤りを取得

        Args:
            target_text: 目標文
            transcript_text: 発話テキスト（STT結果）

        Returns:
            文法フィードバック
        """
        response = await self.retry_policy.execute(
            lambda: self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": GRAMMAR_SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": build_grammar_user_prompt(target_text, transcript_text),
                    },
                ],
                max_tokens=500,
                temperature=0.5,
            )
        )

        content: str | None = None
        if response.choices:
            content = response.choices[0].message.content
        if not content or not content.strip():
            raise UpstreamError("Grammar analysis failed", "Empty response from xAI")

        payload = parse_response_json(content.strip())
        if payload is None:
            logger.warning("文法フィードバックを解析できませんでした: %s", content[:200])
            raise ProtocolError("Grammar analysis failed", "Failed to parse grammar response")

        verdict = verdict_from_payload(payload)
        logger.info("文法フィードバック: %d件の誤り", len(verdict.mistakes))
        return verdict
