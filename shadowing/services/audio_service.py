"""
音声正規化サービス
RIFF/WAVEコンテナを解析し、PCM16 モノラル 16kHz に変換する
"""

import logging
import struct

import numpy as np

from shadowing.config import TARGET_BITS_PER_SAMPLE, TARGET_SAMPLE_RATE
from shadowing.models.schemas import NormalizedAudio, WavFormat
from shadowing.services.errors import AudioFormatError

logger = logging.getLogger(__name__)

# RIFFヘッダー(12) + fmtチャンク(24) + dataチャンクヘッダー(8)
MIN_HEADER_SIZE = 44
WAVE_FORMAT_PCM = 1

_CHUNK_HEADER = struct.Struct("<4sI")
_FMT_BODY = struct.Struct("<HHIIHH")


class AudioNormalizer:
    """WAVE音声をリアルタイム分析用のPCMに変換するクラス"""

    def __init__(self, target_sample_rate: int = TARGET_SAMPLE_RATE) -> None:
        """
        初期化処理

        Args:
            target_sample_rate: 出力サンプルレート（Hz）
        """
        self.target_sample_rate: int = target_sample_rate

    @staticmethod
    def _check_container(data: bytes) -> None:
        if not data or len(data) < MIN_HEADER_SIZE:
            raise AudioFormatError(
                "Invalid WAV file", "Buffer is shorter than the minimum WAV header size."
            )
        if data[0:4] != b"RIFF":
            raise AudioFormatError("Invalid WAV file", "Missing RIFF marker.")
        if data[8:12] != b"WAVE":
            raise AudioFormatError("Invalid WAV file", "Missing WAVE marker.")

    @staticmethod
    def _find_chunk(data: bytes, chunk_id: bytes) -> tuple[int, int] | None:
        """
        チャンクを先頭から順に探す

        Returns:
            (チャンク本体の開始位置, チャンクサイズ)、見つからない場合はNone
        """
        offset = 12
        while offset < len(data) - 8:
            current_id, size = _CHUNK_HEADER.unpack_from(data, offset)
            if current_id == chunk_id:
                return offset + 8, size
            offset += 8 + size
        return None

    def parse_format(self, data: bytes) -> WavFormat:
        """
        fmtチャンクを解析

        Args:
            data: WAVEファイルのバイト列

        Returns:
            音声フォーマット情報
        """
        self._check_container(data)
        found = self._find_chunk(data, b"fmt ")
        if found is None:
            raise AudioFormatError("Invalid WAV file", "fmt chunk not found.")
        start, _ = found
        if start + _FMT_BODY.size > len(data):
            raise AudioFormatError("Invalid WAV file", "fmt chunk is truncated.")

        audio_format, channels, sample_rate, byte_rate, block_align, bits = (
            _FMT_BODY.unpack_from(data, start)
        )
        return WavFormat(
            audio_format=audio_format,
            channels=channels,
            sample_rate=sample_rate,
            byte_rate=byte_rate,
            block_align=block_align,
            bits_per_sample=bits,
        )

    def extract_samples(self, data: bytes) -> bytes:
        """
        dataチャンクからPCMデータを取り出す

        Args:
            data: WAVEファイルのバイト列

        Returns:
            PCMデータ
        """
        self._check_container(data)
        found = self._find_chunk(data, b"data")
        if found is None:
            raise AudioFormatError(
                "Invalid WAV file", "Could not extract audio data from WAV file."
            )
        start, size = found
        return data[start : start + size]

    @staticmethod
    def downmix(pcm: bytes, channels: int) -> bytes:
        """
        ステレオをモノラルに変換（左右の平均を四捨五入）

        Args:
            pcm: PCM16データ
            channels: チャンネル数（1または2）

        Returns:
            モノラルのPCM16データ
        """
        if channels == 1:
            return pcm
        if channels != 2:
            raise AudioFormatError(
                "Unsupported channel count",
                f"{channels} channels. Please record mono or stereo.",
            )

        usable = len(pcm) - len(pcm) % 4
        frames = np.frombuffer(pcm[:usable], dtype="<i2").reshape(-1, 2).astype(np.int32)
        # (l + r) / 2 の四捨五入（0.5は正の方向へ）
        mono = np.floor_divide(frames[:, 0] + frames[:, 1] + 1, 2)
        return mono.astype("<i2").tobytes()

    @staticmethod
    def resample(pcm: bytes, from_rate: int, to_rate: int) -> bytes:
        """
        最近傍法でリサンプリング

        帯域制限フィルタは適用しないため、ダウンサンプリング時に折り返し歪みが残る。

        Args:
            pcm: PCM16 モノラルデータ
            from_rate: 入力サンプルレート
            to_rate: 出力サンプルレート

        Returns:
            リサンプリング後のPCM16データ
        """
        if from_rate == to_rate:
            return pcm
        if from_rate <= 0 or to_rate <= 0:
            raise AudioFormatError(
                "Unsupported sample rate", f"Cannot resample {from_rate}Hz to {to_rate}Hz."
            )

        samples = np.frombuffer(pcm[: len(pcm) - len(pcm) % 2], dtype="<i2")
        output_count = len(samples) * to_rate // from_rate
        source_index = (np.arange(output_count, dtype=np.int64) * from_rate) // to_rate
        return samples[source_index].astype("<i2").tobytes()

    def normalize(self, data: bytes) -> NormalizedAudio:
        """
        WAVEファイルを検証し、PCM16 モノラル 16kHz に変換

        Args:
            data: WAVEファイルのバイト列

        Returns:
            正規化済み音声
        """
        wav_format = self.parse_format(data)

        if wav_format.audio_format != WAVE_FORMAT_PCM:
            raise AudioFormatError(
                "Unsupported audio format",
                f"Format {wav_format.audio_format}. Please record PCM WAV.",
            )
        if wav_format.bits_per_sample != TARGET_BITS_PER_SAMPLE:
            raise AudioFormatError(
                "Unsupported bits per sample",
                f"{wav_format.bits_per_sample} bits. Please record 16-bit audio.",
            )
        if wav_format.channels not in (1, 2):
            raise AudioFormatError(
                "Unsupported channel count",
                f"{wav_format.channels} channels. Please record mono or stereo.",
            )
        if wav_format.sample_rate <= 0:
            raise AudioFormatError("Unsupported sample rate", "Sample rate is zero.")

        pcm = self.extract_samples(data)
        logger.info(
            "入力音声: %dHz, %dch, %dbit",
            wav_format.sample_rate,
            wav_format.channels,
            wav_format.bits_per_sample,
        )

        if wav_format.channels == 2:
            logger.debug("ステレオをモノラルに変換します")
            pcm = self.downmix(pcm, wav_format.channels)

        if wav_format.sample_rate != self.target_sample_rate:
            logger.debug(
                "%dHz から %dHz にリサンプリングします",
                wav_format.sample_rate,
                self.target_sample_rate,
            )
            pcm = self.resample(pcm, wav_format.sample_rate, self.target_sample_rate)

        audio = NormalizedAudio(pcm_data=pcm, sample_rate=self.target_sample_rate)
        logger.info("出力PCM: %d bytes (%.2fs)", len(pcm), audio.duration_seconds)
        return audio
