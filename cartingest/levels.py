"""
Audio level scanning.

Decodes samples with soundfile and reduces them to per-block peak levels in
dBFS with numpy. Used to place segue markers where the audio last falls
below a threshold, and to probe cut durations.
"""

import logging
from pathlib import Path
from typing import NamedTuple, Optional, Tuple, Union

import mutagen
import numpy as np
import soundfile as sf

from .container import inspect, is_container
from .errors import CartIngestError


logger = logging.getLogger(__name__)

BLOCK_MS = 10
SILENCE_FLOOR_DB = -96.0


def read_pcm(file_path: Union[str, Path]) -> Tuple[np.ndarray, int]:
    """
    Load the samples of an audio file as floats in [-1.0, 1.0].

    Returns:
        (samples shaped (frames, channels), sample rate)

    Raises:
        CartIngestError: if libsndfile cannot decode the file
    """
    try:
        samples, sample_rate = sf.read(str(file_path), dtype="float64", always_2d=True)
    except sf.SoundFileError as e:
        raise CartIngestError(f"Cannot decode {Path(file_path).name}: {e}") from e
    return samples, sample_rate


def block_peaks_db(samples: np.ndarray, sample_rate: int, block_ms: int = BLOCK_MS) -> np.ndarray:
    """Peak level (dBFS, all channels) of each block of block_ms."""
    if samples.size == 0 or sample_rate <= 0:
        return np.zeros(0)

    block = max(1, sample_rate * block_ms // 1000)
    peaks = np.max(np.abs(samples), axis=1)
    padded = int(np.ceil(len(peaks) / block)) * block
    peaks = np.pad(peaks, (0, padded - len(peaks)))
    block_peaks = peaks.reshape(-1, block).max(axis=1)

    floor = 10 ** (SILENCE_FLOOR_DB / 20)
    return 20 * np.log10(np.maximum(block_peaks, floor))


def find_segue_start(file_path: Union[str, Path], level_db: float) -> Optional[int]:
    """
    Find where the audio last falls below level_db.

    Returns:
        Position in ms, or None if the file cannot be decoded or never
        reaches the level
    """
    try:
        samples, sample_rate = read_pcm(file_path)
    except CartIngestError as e:
        logger.debug(f"No segue scan: {e}")
        return None

    peaks = block_peaks_db(samples, sample_rate)
    loud = np.nonzero(peaks >= level_db)[0]
    if len(loud) == 0:
        logger.debug(f"{Path(file_path).name} never reaches {level_db} dBFS")
        return None

    position = int(loud[-1] + 1) * BLOCK_MS
    return min(position, len(samples) * 1000 // sample_rate)


class AudioInfo(NamedTuple):
    duration_ms: int
    sample_rate: int
    channels: int


def probe_audio(file_path: Union[str, Path]) -> Optional[AudioInfo]:
    """
    Length and format of an audio file.

    WAV files are measured from their chunk table; other formats are asked
    through mutagen.

    Returns:
        AudioInfo, or None if the file cannot be read as audio
    """
    if is_container(file_path):
        descriptor = inspect(file_path)
        return AudioInfo(descriptor.duration_ms, descriptor.sample_rate, descriptor.channels)

    try:
        audio = mutagen.File(str(file_path))
    except mutagen.MutagenError as e:
        logger.debug(f"Cannot probe {file_path}: {e}")
        return None
    if audio is None or audio.info is None:
        return None
    info = audio.info
    return AudioInfo(
        duration_ms=int(round(info.length * 1000)),
        sample_rate=getattr(info, "sample_rate", 0),
        channels=getattr(info, "channels", 0),
    )
