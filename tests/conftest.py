"""
Pytest configuration for cartingest tests.
"""

import struct
from pathlib import Path

import pytest

from cartingest.catalog import SqliteCatalog
from cartingest.settings import ImportSettings


RATE = 8000


def pcm16(values):
    """Pack 16-bit little-endian samples."""
    return struct.pack(f"<{len(values)}h", *values)


def quiet_samples(frames, channels=1):
    # Small values keep every high byte at 0x00, so audio never looks like a chunk id
    return [(i % 50) + 1 for i in range(frames * channels)]


def chunk(chunk_id: bytes, payload: bytes, declared=None) -> bytes:
    size = len(payload) if declared is None else declared
    pad = b"\x00" if len(payload) & 1 else b""
    return chunk_id + struct.pack("<I", size) + payload + pad


def fmt_payload(rate=RATE, channels=1, bits=16, format_tag=1) -> bytes:
    block_align = channels * bits // 8
    return struct.pack("<HHIIHH", format_tag, channels, rate, rate * block_align, block_align, bits)


def cart_chunk_payload(**fields) -> bytes:
    """Minimal broadcast WAV cart chunk: version plus fixed-width text fields."""
    names = ("title", "artist", "cut_id", "client", "category", "classification", "outcue")
    body = b"0101"
    for name in names:
        body += fields.get(name, "").encode("latin-1").ljust(64, b"\x00")
    return body


def build_wav(
    path: Path,
    frames: int = RATE,
    channels: int = 1,
    samples=None,
    data_declared=None,
    riff_declared=None,
    order=("fmt", "data"),
    omit_data_header: bool = False,
    extra_chunks=(),
    truncate_to=None,
) -> Path:
    """
    Write a 16-bit PCM WAV file, optionally with deliberate defects.

    Args:
        data_declared: Size written into the data header (default: correct)
        riff_declared: Size written into the RIFF header (default: correct)
        order: Chunk order, any of 'fmt', 'data' and ('id', payload) tuples
        omit_data_header: Write the samples without a data header
        extra_chunks: (id, payload) pairs placed between fmt and data
        truncate_to: Cut the finished file to this many bytes
    """
    if samples is None:
        samples = quiet_samples(frames, channels)
    audio = pcm16(samples)

    parts = []
    for name in order:
        if name == "fmt":
            parts.append(chunk(b"fmt ", fmt_payload(channels=channels)))
            for chunk_id, payload in extra_chunks:
                parts.append(chunk(chunk_id, payload))
        elif name == "data":
            if omit_data_header:
                parts.append(audio)
            else:
                parts.append(chunk(b"data", audio, declared=data_declared))
    body = b"WAVE" + b"".join(parts)
    riff_size = len(body) if riff_declared is None else riff_declared
    content = b"RIFF" + struct.pack("<I", riff_size) + body
    if truncate_to is not None:
        content = content[:truncate_to]
    path.write_bytes(content)
    return path


@pytest.fixture
def wav_factory(tmp_path):
    """Build WAV files inside tmp_path: wav_factory('name.wav', **options)."""
    def factory(name="test.wav", directory=None, **options):
        target = Path(directory or tmp_path) / name
        target.parent.mkdir(parents=True, exist_ok=True)
        return build_wav(target, **options)
    return factory


@pytest.fixture
def catalog(tmp_path):
    """SQLite catalog with a MUSIC group owning carts 100-199."""
    library = SqliteCatalog(tmp_path / "catalog" / "catalog.db", tmp_path / "catalog" / "audio")
    library.create_group("MUSIC", 100, 199)
    return library


@pytest.fixture
def settings():
    """Settings that store audio verbatim, so no ffmpeg is needed."""
    return ImportSettings(group="MUSIC", audio_format="copy")


@pytest.fixture
def dropbox_dir(tmp_path):
    path = tmp_path / "dropbox"
    path.mkdir()
    return path
