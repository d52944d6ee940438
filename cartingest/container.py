"""
WAV container inspection.

Walks the RIFF chunk table of a WAV file without reading the audio payload
and reports the defects a streaming or crashed writer typically leaves
behind: size fields that were never back-patched, missing chunks, chunks in
the wrong order, and data that runs past the end of the file.
"""

import logging
import os
import struct
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import BinaryIO, List, Optional, Set, Tuple, Union

from .errors import NotAContainer


logger = logging.getLogger(__name__)

RIFF_HEADER_SIZE = 12
CHUNK_HEADER_SIZE = 8
FMT_MIN_SIZE = 16
SCAN_BLOCK_SIZE = 65536

FMT_CHUNK = b"fmt "
DATA_CHUNK = b"data"
REQUIRED_CHUNKS = (FMT_CHUNK, DATA_CHUNK)

# Size values left in the data header by writers that never back-patch it
STREAMING_PLACEHOLDER_SIZES = (0, 0xFFFFFFFF)

KNOWN_CHUNK_IDS = (
    b"fmt ", b"data", b"LIST", b"fact", b"cue ", b"bext", b"cart", b"id3 ",
    b"ID3 ", b"PEAK", b"smpl", b"inst", b"JUNK", b"junk", b"levl", b"iXML",
    b"axml", b"plst", b"umid", b"chna", b"mext", b"_PMX", b"DISP",
)


class DefectKind(Enum):
    """Classes of container defects."""
    MISSING_REQUIRED_CHUNK = "missing_required_chunk"
    SIZE_MISMATCH = "size_mismatch"
    TRUNCATED_FILE = "truncated_file"
    CHUNK_ORDER = "chunk_order"
    INVALID_FORMAT = "invalid_format"


@dataclass(frozen=True)
class ChunkEntry:
    """One entry of the chunk table.

    Attributes:
        chunk_id: Four byte chunk identifier
        offset: File offset of the chunk header
        declared_size: Size field as written in the header
        actual_size: Payload bytes actually present before the next chunk or EOF
        span: Bytes occupied on disk including header and pad byte
    """
    chunk_id: bytes
    offset: int
    declared_size: int
    actual_size: int
    span: int

    @property
    def name(self) -> str:
        return self.chunk_id.decode("latin-1")

    @property
    def payload_offset(self) -> int:
        return self.offset + CHUNK_HEADER_SIZE

    @property
    def size_field_offset(self) -> int:
        return self.offset + 4

    @property
    def mismatched(self) -> bool:
        return self.declared_size != self.actual_size


@dataclass
class ContainerDescriptor:
    """Result of inspecting one WAV file. Built fresh per inspection."""
    path: Path
    file_size: int
    riff_declared_size: int
    chunk_table: List[ChunkEntry] = field(default_factory=list)
    format_tag: int = 0
    sample_rate: int = 0
    channels: int = 0
    bits_per_sample: int = 0
    block_align: int = 0
    total_frame_count: int = 0
    defects: Set[DefectKind] = field(default_factory=set)
    missing_chunks: List[bytes] = field(default_factory=list)
    unparsed_tail: Optional[Tuple[int, int]] = None

    def chunk(self, chunk_id: bytes) -> Optional[ChunkEntry]:
        """Return the first chunk with the given id, or None."""
        for entry in self.chunk_table:
            if entry.chunk_id == chunk_id:
                return entry
        return None

    @property
    def fmt_chunk(self) -> Optional[ChunkEntry]:
        return self.chunk(FMT_CHUNK)

    @property
    def data_chunk(self) -> Optional[ChunkEntry]:
        return self.chunk(DATA_CHUNK)

    @property
    def expected_riff_size(self) -> int:
        """RIFF size field value implied by the measured chunk table."""
        return 4 + sum(entry.span for entry in self.chunk_table)

    @property
    def is_valid(self) -> bool:
        return not self.defects

    @property
    def data_recoverable_from_tail(self) -> bool:
        """A missing data chunk can be rebuilt around trailing unparsed bytes."""
        return (
            self.fmt_chunk is not None
            and self.data_chunk is None
            and self.unparsed_tail is not None
            and self.unparsed_tail[1] > 0
        )

    @property
    def is_repairable(self) -> bool:
        """True if every detected defect can be fixed without touching audio."""
        if not self.defects:
            return False
        if DefectKind.TRUNCATED_FILE in self.defects:
            return False
        if DefectKind.INVALID_FORMAT in self.defects:
            return False
        if DefectKind.MISSING_REQUIRED_CHUNK in self.defects:
            return self.data_recoverable_from_tail
        return True

    @property
    def needs_rewrite(self) -> bool:
        """Repair needs a re-layout rather than in-place size patching."""
        return (
            DefectKind.CHUNK_ORDER in self.defects
            or DefectKind.MISSING_REQUIRED_CHUNK in self.defects
        )

    @property
    def duration_ms(self) -> int:
        if self.sample_rate <= 0:
            return 0
        return int(self.total_frame_count * 1000 // self.sample_rate)

    def to_dict(self) -> dict:
        """Convert to dictionary for reports."""
        return {
            "path": str(self.path),
            "file_size": self.file_size,
            "riff_declared_size": self.riff_declared_size,
            "sample_rate": self.sample_rate,
            "channels": self.channels,
            "bits_per_sample": self.bits_per_sample,
            "total_frame_count": self.total_frame_count,
            "defects": sorted(d.value for d in self.defects),
            "chunks": [
                {
                    "id": entry.name,
                    "offset": entry.offset,
                    "declared_size": entry.declared_size,
                    "actual_size": entry.actual_size,
                }
                for entry in self.chunk_table
            ],
        }


def sniff_format(file_path: Union[str, Path]) -> Optional[str]:
    """
    Identify an audio file by its leading bytes.

    Returns:
        'wav', 'mpeg', 'flac', 'ogg' or None if the signature is unknown
        or the file cannot be read.
    """
    try:
        with open(file_path, "rb") as f:
            head = f.read(RIFF_HEADER_SIZE)
    except OSError:
        return None

    if len(head) >= RIFF_HEADER_SIZE and head[:4] == b"RIFF" and head[8:12] == b"WAVE":
        return "wav"
    if head[:4] == b"fLaC":
        return "flac"
    if head[:4] == b"OggS":
        return "ogg"
    if head[:3] == b"ID3":
        return "mpeg"
    if len(head) >= 2 and head[0] == 0xFF and (head[1] & 0xE0) == 0xE0:
        return "mpeg"
    return None


def is_container(file_path: Union[str, Path]) -> bool:
    """Lightweight signature check: True only for RIFF/WAVE files."""
    return sniff_format(file_path) == "wav"


def is_importable(file_path: Union[str, Path]) -> bool:
    """True for any file whose signature the importer recognises."""
    return sniff_format(file_path) is not None


def _plausible_id(chunk_id: bytes) -> bool:
    return len(chunk_id) == 4 and all(0x20 <= b <= 0x7E for b in chunk_id)


def _header_fits(f: BinaryIO, offset: int, file_size: int) -> bool:
    """True if the chunk header at offset declares a payload that fits in the file."""
    if offset + CHUNK_HEADER_SIZE > file_size:
        return False
    f.seek(offset + 4)
    (size,) = struct.unpack("<I", f.read(4))
    # The final pad byte of an odd chunk may be missing
    return offset + CHUNK_HEADER_SIZE + size <= file_size + 1


def _find_next_chunk(f: BinaryIO, start: int, file_size: int) -> Optional[int]:
    """Scan forward from start for a known chunk header that fits in the file."""
    position = start
    overlap = 3
    while position < file_size:
        f.seek(position)
        block = f.read(SCAN_BLOCK_SIZE + overlap)
        if not block:
            break
        best = None
        for chunk_id in KNOWN_CHUNK_IDS:
            index = block.find(chunk_id)
            while index != -1:
                candidate = position + index
                if _header_fits(f, candidate, file_size):
                    if best is None or candidate < best:
                        best = candidate
                    break
                index = block.find(chunk_id, index + 1)
        if best is not None:
            return best
        position += SCAN_BLOCK_SIZE
    return None


def _known_header_at(f: BinaryIO, offset: int, file_size: int) -> bool:
    if offset + CHUNK_HEADER_SIZE > file_size:
        return False
    f.seek(offset)
    return f.read(4) in KNOWN_CHUNK_IDS


def _measure_chunk(
    f: BinaryIO,
    chunk_id: bytes,
    offset: int,
    declared: int,
    file_size: int,
) -> Tuple[int, int, bool]:
    """
    Measure a chunk's real payload size.

    Returns:
        Tuple of (actual_size, next_offset, truncated)
    """
    payload = offset + CHUNK_HEADER_SIZE
    available = file_size - payload

    if chunk_id == DATA_CHUNK and declared in STREAMING_PLACEHOLDER_SIZES:
        if declared == 0 and (available == 0 or _known_header_at(f, payload, file_size)):
            return 0, payload, False
        return available, file_size, False

    if declared > available:
        if chunk_id == DATA_CHUNK:
            return available, file_size, True
        found = _find_next_chunk(f, payload, file_size)
        if found is not None:
            return found - payload, found, False
        return available, file_size, False

    next_offset = payload + declared + (declared & 1)
    if next_offset + CHUNK_HEADER_SIZE > file_size:
        return declared, next_offset, False

    f.seek(next_offset)
    next_id = f.read(4)
    if (next_id in KNOWN_CHUNK_IDS or _plausible_id(next_id)) and _header_fits(
        f, next_offset, file_size
    ):
        return declared, next_offset, False

    found = _find_next_chunk(f, payload, file_size)
    if found is not None:
        return found - payload, found, False
    if chunk_id == DATA_CHUNK:
        return available, file_size, False
    # Whatever follows is not a chunk; it is reported as the unparsed tail.
    return declared, next_offset, False


def _parse_format(f: BinaryIO, descriptor: ContainerDescriptor, entry: ChunkEntry) -> None:
    size = min(entry.declared_size, entry.actual_size)
    if size < FMT_MIN_SIZE:
        descriptor.defects.add(DefectKind.INVALID_FORMAT)
        return
    f.seek(entry.payload_offset)
    (format_tag, channels, sample_rate, _byte_rate,
     block_align, bits) = struct.unpack("<HHIIHH", f.read(FMT_MIN_SIZE))
    descriptor.format_tag = format_tag
    descriptor.channels = channels
    descriptor.sample_rate = sample_rate
    descriptor.block_align = block_align
    descriptor.bits_per_sample = bits
    if channels == 0 or sample_rate == 0 or block_align == 0:
        descriptor.defects.add(DefectKind.INVALID_FORMAT)


def inspect(file_path: Union[str, Path]) -> ContainerDescriptor:
    """
    Parse the chunk layout of a WAV file.

    Args:
        file_path: Path to the file

    Returns:
        ContainerDescriptor with the chunk table, audio format and defects

    Raises:
        NotAContainer: If the file does not start with a RIFF/WAVE header
    """
    file_path = Path(file_path)

    with open(file_path, "rb") as f:
        header = f.read(RIFF_HEADER_SIZE)
        if (len(header) < RIFF_HEADER_SIZE
                or header[:4] != b"RIFF" or header[8:12] != b"WAVE"):
            raise NotAContainer(
                f"Not a RIFF/WAVE file: {file_path}",
                details={"path": str(file_path)}
            )

        (riff_declared,) = struct.unpack("<I", header[4:8])
        file_size = os.fstat(f.fileno()).st_size

        descriptor = ContainerDescriptor(
            path=file_path,
            file_size=file_size,
            riff_declared_size=riff_declared,
        )

        offset = RIFF_HEADER_SIZE
        truncated = False
        while offset + CHUNK_HEADER_SIZE <= file_size:
            f.seek(offset)
            chunk_header = f.read(CHUNK_HEADER_SIZE)
            chunk_id = chunk_header[:4]
            if not _plausible_id(chunk_id):
                descriptor.unparsed_tail = (offset, file_size - offset)
                break
            (declared,) = struct.unpack("<I", chunk_header[4:8])
            actual, next_offset, chunk_truncated = _measure_chunk(
                f, chunk_id, offset, declared, file_size
            )
            span = min(next_offset, file_size) - offset
            entry = ChunkEntry(chunk_id, offset, declared, actual, span)
            descriptor.chunk_table.append(entry)
            logger.debug(
                f"{file_path.name}: chunk '{entry.name}' at {offset}, "
                f"declared {declared}, actual {actual}"
            )
            if chunk_truncated:
                truncated = True
            elif entry.mismatched:
                descriptor.defects.add(DefectKind.SIZE_MISMATCH)
            offset = next_offset
        else:
            if offset < file_size:
                descriptor.unparsed_tail = (offset, file_size - offset)

        if truncated:
            descriptor.defects.add(DefectKind.TRUNCATED_FILE)

        for chunk_id in REQUIRED_CHUNKS:
            if descriptor.chunk(chunk_id) is None:
                descriptor.missing_chunks.append(chunk_id)
        if descriptor.missing_chunks:
            descriptor.defects.add(DefectKind.MISSING_REQUIRED_CHUNK)

        fmt_entry = descriptor.fmt_chunk
        data_entry = descriptor.data_chunk
        if fmt_entry is not None:
            _parse_format(f, descriptor, fmt_entry)
        if fmt_entry is not None and data_entry is not None:
            if data_entry.offset < fmt_entry.offset:
                descriptor.defects.add(DefectKind.CHUNK_ORDER)
            if descriptor.block_align:
                descriptor.total_frame_count = data_entry.actual_size // descriptor.block_align

    if descriptor.chunk_table and riff_declared != descriptor.expected_riff_size:
        descriptor.defects.add(DefectKind.SIZE_MISMATCH)

    if descriptor.defects:
        logger.debug(
            f"{file_path.name}: defects "
            f"{sorted(d.value for d in descriptor.defects)}"
        )

    return descriptor
