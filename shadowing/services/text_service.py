"""
テキスト採点サービス
句読点を無視した文字誤り率（CER）の計算と、文字単位の差分作成を行う
"""

import math
import re
from typing import List, Sequence

import jiwer
import Levenshtein

from shadowing.models.schemas import AlignmentResult, AlignmentUnit

# ASCII・韓国語・CJKの句読点と全角記号
# 実際のSTT出力での網羅性は未検証のため、範囲を推測で広げないこと
PUNCTUATION_PATTERN = re.compile(
    r"[.,!?;:'\"()\[\]{}…·~\-—–_@#$%^&*+=<>/\\|`"
    r"「」『』【】〈〉《》〔〕〖〗〘〙〚〛"
    r"\u2000-\u206F\u3000-\u303F\uFF00-\uFFEF]"
)
WHITESPACE_PATTERN = re.compile(r"\s+")

# STTが付与する注釈（[music]、(noise)、<unk>、*inaudible* など）
_ANNOTATION_PATTERNS = [
    re.compile(r"\[[^\]]*\]"),
    re.compile(
        r"\((?:music|noise|background|applause|laughter|silence|inaudible|unclear"
        r"|crosstalk|foreign|speaking\s+\w+)[^)]*\)",
        re.IGNORECASE,
    ),
    re.compile(r"<[^>]*>"),
    re.compile(r"\*[^*]+\*"),
]

# バックトラック用の操作記号
_MATCH, _SUBSTITUTE, _DELETE, _INSERT = "M", "S", "D", "I"


def round_half_up(value: float, digits: int = 0) -> float:
    """0.5を正の方向に丸める（Pythonのround()は偶数丸めのため使わない）"""
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def accuracy_percent(character_error_rate: float) -> int:
    """
    CERから正確性（%）を計算

    レスポンスのmetrics.cerと食い違わないよう、CERを小数第3位で丸めてから百分率にする。

    Args:
        character_error_rate: 文字誤り率（0.0-1.0、丸める前の値）

    Returns:
        max(0, 100 - round(round(CER, 3) × 100))
    """
    # 千分率の整数で計算して浮動小数点の誤差を避ける
    per_mille = int(round_half_up(character_error_rate * 1000))
    return max(0, 100 - (per_mille + 5) // 10)


def sanitize_transcript(text: str | None) -> str:
    """
    STTのテキストからノイズ注釈を取り除く

    Args:
        text: STTが返したテキスト

    Returns:
        UI表示用のテキスト
    """
    if not text:
        return ""
    cleaned = text
    for pattern in _ANNOTATION_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    return WHITESPACE_PATTERN.sub(" ", cleaned).strip()


class TextAligner:
    """目標文と発話テキストを比較するクラス"""

    @staticmethod
    def normalize(text: str | None) -> str:
        """
        比較用にテキストを正規化

        句読点を除去し、空白をまとめ、前後の空白を削除して小文字化する。
        小文字化はハングルには影響せず、英字が混ざった場合のみ効く。

        例: "커피 사 주세요." と "커피 사 주세요" はどちらも "커피 사 주세요" になる

        Args:
            text: 元のテキスト

        Returns:
            正規化済みテキスト
        """
        if not text:
            return ""
        normalized = PUNCTUATION_PATTERN.sub("", text)
        normalized = WHITESPACE_PATTERN.sub(" ", normalized).strip()
        return normalized.lower()

    def score(self, target: str, hypothesis: str) -> AlignmentResult:
        """
        文字誤り率を計算し、差分と合わせて返す

        Args:
            target: 目標文
            hypothesis: 発話テキスト（STT結果）

        Returns:
            採点結果（編集距離、CER、差分）
        """
        reference = self.normalize(target)
        spoken = self.normalize(hypothesis)
        units = self.diff(target, hypothesis)

        if not reference:
            return AlignmentResult(
                edit_distance=len(spoken),
                character_error_rate=1.0 if spoken else 0.0,
                units=units,
                wrong_units=[],
            )

        distance = Levenshtein.distance(reference, spoken)
        cer = min(1.0, distance / max(1, len(reference)))
        return AlignmentResult(
            edit_distance=distance,
            character_error_rate=cer,
            units=units,
            wrong_units=self.trouble_units(units),
        )

    def diff(self, target: str, hypothesis: str) -> List[AlignmentUnit]:
        """
        文字単位の差分を作成

        同じ文字は一致を優先し、それ以外はコストが最小の操作を
        置換 > 削除 > 挿入 の順で選ぶ。

        Args:
            target: 目標文
            hypothesis: 発話テキスト

        Returns:
            左から右の順に並んだ差分ユニットのリスト
        """
        reference = self.normalize(target)
        spoken = self.normalize(hypothesis)
        m, n = len(reference), len(spoken)

        dp = [[0] * (n + 1) for _ in range(m + 1)]
        ops = [[""] * (n + 1) for _ in range(m + 1)]
        for i in range(m + 1):
            dp[i][0] = i
            ops[i][0] = _DELETE
        for j in range(n + 1):
            dp[0][j] = j
            ops[0][j] = _INSERT
        ops[0][0] = ""

        for i in range(1, m + 1):
            for j in range(1, n + 1):
                if reference[i - 1] == spoken[j - 1]:
                    dp[i][j] = dp[i - 1][j - 1]
                    ops[i][j] = _MATCH
                    continue
                substitute = dp[i - 1][j - 1] + 1
                delete = dp[i - 1][j] + 1
                insert = dp[i][j - 1] + 1
                best = min(substitute, delete, insert)
                dp[i][j] = best
                if best == substitute:
                    ops[i][j] = _SUBSTITUTE
                elif best == delete:
                    ops[i][j] = _DELETE
                else:
                    ops[i][j] = _INSERT

        units: List[AlignmentUnit] = []
        i, j = m, n
        while i > 0 or j > 0:
            op = ops[i][j]
            if op == _MATCH:
                units.append(AlignmentUnit(unit=reference[i - 1], status="correct"))
                i, j = i - 1, j - 1
            elif op == _SUBSTITUTE:
                units.append(
                    AlignmentUnit(unit=reference[i - 1], status="wrong", got=spoken[j - 1])
                )
                i, j = i - 1, j - 1
            elif op == _DELETE:
                units.append(AlignmentUnit(unit=reference[i - 1], status="missing"))
                i -= 1
            else:
                units.append(AlignmentUnit(unit=spoken[j - 1], status="extra"))
                j -= 1

        units.reverse()
        return units

    @staticmethod
    def trouble_units(units: Sequence[AlignmentUnit]) -> List[str]:
        """
        誤り・欠落した目標文字を重複なしで集める

        目標文の左から右へ、最初に現れた順に並べる。
        （差分のバックトラック中に集めると右から左の順になるが、表示用には左からの順を使う）

        Args:
            units: 差分ユニット

        Returns:
            最初に現れた順の文字リスト
        """
        seen: List[str] = []
        for unit in units:
            if unit.status in ("wrong", "missing") and unit.unit not in seen:
                seen.append(unit.unit)
        return seen

    def word_error_rate(self, target: str, hypothesis: str) -> float:
        """
        単語誤り率（WER）を計算（参考値）

        Args:
            target: 目標文
            hypothesis: 発話テキスト

        Returns:
            単語誤り率（小数第3位で丸め）
        """
        reference = self.normalize(target)
        spoken = self.normalize(hypothesis)
        if not reference:
            return 1.0 if spoken else 0.0
        if not spoken:
            # 発話が空の場合は全単語が欠落
            return 1.0
        return round_half_up(jiwer.wer(reference, spoken), 3)
