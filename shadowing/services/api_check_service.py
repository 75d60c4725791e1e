"""
API接続チェックサービス
音声認識・xAI APIの設定状態をチェックする
"""
import os
from typing import Dict, List

from openai import OpenAI

from shadowing.config import XAI_BASE_URL


class APICheckService:
    """API接続状態をチェックするサービスクラス"""

    def check_stt_api(self) -> Dict[str, str]:
        """
        ElevenLabs STT APIの設定状態をチェック

        Returns:
            API名と状態を含む辞書
        """
        api_key: str | None = os.getenv("ELEVENLABS_API_KEY")

        if not api_key:
            return {
                "name": "ElevenLabs STT API",
                "status": "不明",
                "message": "APIキーが設定されていません"
            }

        return {
            "name": "ElevenLabs STT API",
            "status": "利用可能",
            "message": "APIキーが設定されています"
        }

    def check_xai_api(self) -> Dict[str, str]:
        """
        xAI APIの接続状態をチェック（文法フィードバック・発音分析で共用）

        Returns:
            API名と状態を含む辞書
        """
        api_key: str | None = os.getenv("XAI_API_KEY")

        if not api_key:
            return {
                "name": "xAI API",
                "status": "不明",
                "message": "APIキーが設定されていません"
            }

        try:
            client = OpenAI(api_key=api_key, base_url=XAI_BASE_URL)
            # models.list()を呼び出して接続確認
            client.models.list()
            return {
                "name": "xAI API",
                "status": "利用可能",
                "message": "APIキーが有効です"
            }
        except Exception as e:
            return {
                "name": "xAI API",
                "status": "エラー",
                "message": f"API接続エラー: {str(e)}"
            }

    def check_all_apis(self) -> List[Dict[str, str]]:
        """
        全てのAPIの接続状態をチェック

        Returns:
            API状態のリスト
        """
        return [self.check_stt_api(), self.check_xai_api()]
