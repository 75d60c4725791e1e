"""
アプリケーション設定
環境変数の読み込み、外部サービスの定数、ログ設定を管理する
"""
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv


def get_app_data_dir() -> Path:
    """
    アプリケーションのデータディレクトリを取得

    Returns:
        アプリケーションデータディレクトリのパス
    """
    override: str | None = os.getenv("SHADOWING_DATA_DIR")
    if override:
        return Path(override)
    if sys.platform == "win32":
        # Windowsの場合、AppData\Local\ShadowingCoachを使用
        app_data: str | None = os.getenv("LOCALAPPDATA")
        if app_data:
            return Path(app_data) / "ShadowingCoach"
    elif sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "ShadowingCoach"
    # その他のOSまたはフォールバック
    return Path.home() / ".shadowing_coach"


def get_log_file() -> Path:
    """
    ログファイルのパスを取得

    Returns:
        ログファイルのパス
    """
    return get_app_data_dir() / "shadowing.log"


def load_environment(env_path: Path | None = None) -> bool:
    """
    .envファイルから環境変数を読み込む

    Args:
        env_path: .envファイルのパス（指定しない場合はカレントディレクトリから探す）

    Returns:
        .envファイルが読み込まれた場合True
    """
    if env_path is not None:
        if not env_path.exists():
            return False
        return load_dotenv(env_path)
    return load_dotenv()


def setup_logging(level: str | None = None, log_file: Path | None = None) -> logging.Logger:
    """
    パッケージ共通のロガーを設定

    Args:
        level: ログレベル（指定しない場合はLOG_LEVEL環境変数、既定はINFO）
        log_file: ログファイルのパス（指定しない場合はLOG_FILE）

    Returns:
        設定済みのパッケージロガー
    """
    level_name: str = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logger = logging.getLogger("shadowing")
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    if not logger.handlers:
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)

        target: Path = log_file or get_log_file()
        target.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(target, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger


# アプリケーションデータディレクトリ
APP_DATA_DIR = get_app_data_dir()

# ログファイル
LOG_FILE = get_log_file()

# 評価リクエスト
DEFAULT_LOCALE = "ko-KR"
MAX_AUDIO_BYTES = 25 * 1024 * 1024  # 25MB

# 正規化後の音声フォーマット（PCM16 モノラル 16kHz）
TARGET_SAMPLE_RATE = 16000
TARGET_CHANNELS = 1
TARGET_BITS_PER_SAMPLE = 16

# ElevenLabs STT
ELEVENLABS_STT_URL = "https://api.elevenlabs.io/v1/speech-to-text"
ELEVENLABS_STT_MODEL = "scribe_v1"
STT_TIMEOUT_SECONDS = 60.0  # 1回のHTTP試行あたり
STT_STEP_TIMEOUT_SECONDS = 180.0  # リトライを含むSTT工程全体

# xAI（文法フィードバック・発音分析）
XAI_BASE_URL = "https://api.x.ai/v1"
XAI_GRAMMAR_MODEL = "grok-3"  # 環境変数XAI_MODELで上書き可能
XAI_REALTIME_MODEL = "grok-2-public"  # 環境変数XAI_REALTIME_MODELで上書き可能
GRAMMAR_TIMEOUT_SECONDS = 30.0
GRAMMAR_STEP_TIMEOUT_SECONDS = 60.0

# Realtimeセッション
REALTIME_CONNECT_TIMEOUT_SECONDS = 10.0
REALTIME_RESPONSE_TIMEOUT_SECONDS = 30.0
REALTIME_AUDIO_CHUNK_SIZE = 4096  # 1フレームあたりのバイト数
PRONUNCIATION_STEP_TIMEOUT_SECONDS = 60.0
