"""
Audio encoding for stored cuts.

The import pipeline hands every validated source file to an Encoder, which
writes the library copy in the configured format. FFmpegEncoder shells out
to ffmpeg (normalization via a volumedetect pass, autotrim via
silenceremove); CopyEncoder stores the source verbatim.
"""

import logging
import re
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from .container import sniff_format
from .errors import EncodeError


logger = logging.getLogger(__name__)

ENCODE_TIMEOUT = 600
ANALYZE_TIMEOUT = 120

# Extensions for formats stored untouched
SNIFFED_EXTENSIONS = {
    "wav": "wav",
    "mpeg": "mp3",
    "flac": "flac",
    "ogg": "ogg",
}


class AudioFormat(Enum):
    """Library storage formats."""
    PCM16 = "pcm16"
    PCM24 = "pcm24"
    MP2 = "mp2"
    MP3 = "mp3"
    FLAC = "flac"
    OGG = "ogg"
    COPY = "copy"

    @property
    def extension(self) -> Optional[str]:
        return {
            AudioFormat.PCM16: "wav",
            AudioFormat.PCM24: "wav",
            AudioFormat.MP2: "mp2",
            AudioFormat.MP3: "mp3",
            AudioFormat.FLAC: "flac",
            AudioFormat.OGG: "ogg",
        }.get(self)

    @property
    def codec_args(self) -> List[str]:
        return {
            AudioFormat.PCM16: ["-c:a", "pcm_s16le"],
            AudioFormat.PCM24: ["-c:a", "pcm_s24le"],
            AudioFormat.MP2: ["-c:a", "mp2"],
            AudioFormat.MP3: ["-c:a", "libmp3lame"],
            AudioFormat.FLAC: ["-c:a", "flac"],
            AudioFormat.OGG: ["-c:a", "libvorbis"],
        }.get(self, [])

    @property
    def uses_bitrate(self) -> bool:
        return self in (AudioFormat.MP2, AudioFormat.MP3, AudioFormat.OGG)


@dataclass
class EncodeParams:
    """Target format and processing for one transcode."""
    audio_format: AudioFormat = AudioFormat.PCM16
    sample_rate: int = 48000
    bitrate: int = 0
    channels: int = 2
    normalization_level: Optional[float] = None
    autotrim_level: Optional[float] = None

    @classmethod
    def from_settings(cls, settings) -> "EncodeParams":
        return cls(
            audio_format=AudioFormat(settings.audio_format),
            sample_rate=settings.sample_rate,
            bitrate=settings.bitrate,
            channels=settings.channels,
            normalization_level=settings.normalization_level,
            autotrim_level=settings.autotrim_level,
        )


def output_extension(params: EncodeParams, input_path: Union[str, Path]) -> str:
    """File extension of the stored cut."""
    if params.audio_format.extension:
        return params.audio_format.extension
    sniffed = sniff_format(input_path)
    if sniffed in SNIFFED_EXTENSIONS:
        return SNIFFED_EXTENSIONS[sniffed]
    return Path(input_path).suffix.lstrip(".").lower() or "dat"


class Encoder(ABC):
    """Produces the stored library copy of an imported file."""

    @abstractmethod
    def transcode(
        self,
        input_path: Union[str, Path],
        output_path: Union[str, Path],
        params: EncodeParams,
    ) -> Path:
        """
        Returns:
            Path of the written file

        Raises:
            EncodeError: if no usable output was produced
        """


class CopyEncoder(Encoder):
    """Stores the validated source file unchanged."""

    def transcode(self, input_path, output_path, params):
        output_path = Path(output_path)
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(input_path, output_path)
        except OSError as e:
            raise EncodeError(f"Failed to copy {input_path}: {e}")
        return output_path


class FFmpegEncoder(Encoder):
    """Encodes with the ffmpeg command line tool."""

    def __init__(self, ffmpeg: str = "ffmpeg"):
        self.ffmpeg = ffmpeg

    def _check_available(self) -> None:
        if shutil.which(self.ffmpeg) is None:
            raise EncodeError(f"{self.ffmpeg} not found. Please install ffmpeg.")

    def detect_peak(self, input_path: Union[str, Path]) -> Optional[float]:
        """Peak level of a file in dBFS, from ffmpeg's volumedetect filter."""
        cmd = [
            self.ffmpeg,
            "-hide_banner",
            "-i", str(input_path),
            "-af", "volumedetect",
            "-f", "null",
            "-",
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=ANALYZE_TIMEOUT)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise EncodeError(f"Level analysis failed for {input_path}: {e}")

        match = re.search(r"max_volume:\s*(-?\d+(?:\.\d+)?)\s*dB", result.stderr)
        if match is None:
            return None
        return float(match.group(1))

    def build_filters(self, input_path: Union[str, Path], params: EncodeParams) -> List[str]:
        filters = []
        if params.autotrim_level is not None:
            threshold = f"{params.autotrim_level}dB"
            trim = f"silenceremove=start_periods=1:start_threshold={threshold}"
            # Trim the tail by trimming the head of the reversed stream
            filters.extend([trim, "areverse", trim, "areverse"])
        if params.normalization_level is not None:
            peak = self.detect_peak(input_path)
            if peak is None:
                logger.warning(f"Could not measure peak of {input_path}, skipping normalization")
            else:
                gain = params.normalization_level - peak
                filters.append(f"volume={gain:.2f}dB")
        return filters

    def build_command(
        self,
        input_path: Union[str, Path],
        output_path: Union[str, Path],
        params: EncodeParams,
        filters: List[str],
    ) -> List[str]:
        cmd = [self.ffmpeg, "-y", "-hide_banner", "-loglevel", "error", "-i", str(input_path)]
        if filters:
            cmd.extend(["-af", ",".join(filters)])
        cmd.extend(["-vn", "-ar", str(params.sample_rate), "-ac", str(params.channels)])
        cmd.extend(params.audio_format.codec_args)
        if params.audio_format.uses_bitrate and params.bitrate > 0:
            cmd.extend(["-b:a", f"{params.bitrate}k"])
        cmd.append(str(output_path))
        return cmd

    def transcode(self, input_path, output_path, params):
        if params.audio_format is AudioFormat.COPY:
            return CopyEncoder().transcode(input_path, output_path, params)

        self._check_available()
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        cmd = self.build_command(
            input_path, output_path, params, self.build_filters(input_path, params)
        )
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=ENCODE_TIMEOUT)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise EncodeError(f"ffmpeg failed for {input_path}: {e}")

        if result.returncode != 0 or not output_path.exists():
            stderr = result.stderr.strip().splitlines()
            reason = stderr[-1] if stderr else f"exit status {result.returncode}"
            if output_path.exists():
                output_path.unlink()
            raise EncodeError(
                f"ffmpeg could not encode {Path(input_path).name}: {reason}",
                details={"returncode": result.returncode},
            )
        return output_path


def get_encoder(audio_format: Union[str, AudioFormat]) -> Encoder:
    """Encoder for a storage format."""
    if AudioFormat(audio_format) is AudioFormat.COPY:
        return CopyEncoder()
    return FFmpegEncoder()
