"""
評価処理のエラー定義
呼び出し元へのHTTPステータスとレスポンス本文への変換を持つ
"""
from typing import Any, Dict


class EvaluationError(Exception):
    """評価処理で発生するエラーの基底クラス"""

    http_status: int = 500

    def __init__(self, message: str, details: str | None = None) -> None:
        """
        初期化処理

        Args:
            message: 呼び出し元に返すエラー名
            details: 詳細メッセージ（診断用）
        """
        super().__init__(message if details is None else f"{message}: {details}")
        self.message: str = message
        self.details: str | None = details

    def to_response(self) -> Dict[str, Any]:
        """
        エラーレスポンス本文を作成

        Returns:
            {"ok": False, "error": ..., "details": ...} 形式の辞書
        """
        body: Dict[str, Any] = {"ok": False, "error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class RequestValidationError(EvaluationError):
    """入力が不正または不足している"""

    http_status = 400


class AudioFormatError(RequestValidationError):
    """音声コンテナ（RIFF/WAVE）が不正、または未対応のフォーマット"""


class ServiceUnavailableError(EvaluationError):
    """外部サービスが設定されていない"""

    http_status = 503


class UpstreamError(EvaluationError):
    """外部サービスが成功以外の応答を返した"""

    http_status = 503

    def __init__(
        self, message: str, details: str | None = None, status_code: int | None = None
    ) -> None:
        super().__init__(message, details)
        self.status_code: int | None = status_code


class UpstreamTimeoutError(UpstreamError, TimeoutError):
    """接続または応答の期限を超過した"""


class ProtocolError(UpstreamError):
    """セッションイベントが不正、またはペイロードを解析できない"""
