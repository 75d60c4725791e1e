"""
テスト共通のフィクスチャ
"""
import struct
from typing import Callable, Sequence

import pytest


def build_wav(
    samples: Sequence[int],
    sample_rate: int = 16000,
    channels: int = 1,
    bits_per_sample: int = 16,
    audio_format: int = 1,
    extra_chunks: bytes = b"",
) -> bytes:
    """
    テスト用のWAVEファイルを作成

    Args:
        samples: インターリーブ済みのサンプル値（16bit）
        sample_rate: サンプルレート
        channels: チャンネル数
        bits_per_sample: ビット深度（ヘッダーのみ）
        audio_format: フォーマットコード（1 = PCM）
        extra_chunks: fmtとdataの間に挟むチャンク

    Returns:
        WAVEファイルのバイト列
    """
    data = struct.pack(f"<{len(samples)}h", *samples)
    block_align = channels * bits_per_sample // 8
    fmt = struct.pack(
        "<HHIIHH",
        audio_format,
        channels,
        sample_rate,
        sample_rate * block_align,
        block_align,
        bits_per_sample,
    )
    body = (
        b"WAVE"
        + b"fmt " + struct.pack("<I", len(fmt)) + fmt
        + extra_chunks
        + b"data" + struct.pack("<I", len(data)) + data
    )
    return b"RIFF" + struct.pack("<I", len(body)) + body


@pytest.fixture
def wav_factory() -> Callable[..., bytes]:
    """WAVEファイルを作成する関数"""
    return build_wav
