"""
WAV container repair.

Fixes the defects reported by container.inspect() that can be corrected
without touching audio samples: stale chunk size fields, a stale RIFF size,
a data chunk placed before the format chunk, and a data chunk header that
is missing in front of trailing audio. All work happens on a private
temporary copy that replaces the original only after it re-inspects clean
and everything but its chunk headers hashes identical to the original.
"""

import logging
import os
import shutil
import struct
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterator, List, Tuple, Union

from .checksum import calculate_range_checksum, calculate_ranges_checksum
from .container import (
    CHUNK_HEADER_SIZE,
    DATA_CHUNK,
    FMT_CHUNK,
    ContainerDescriptor,
    DefectKind,
    inspect,
)
from .errors import CartIngestError, RepairError, TruncatedFile


logger = logging.getLogger(__name__)

TEMP_PREFIX = ".cartingest-fix-"
COPY_BUFFER_SIZE = 1024 * 1024


@contextmanager
def scoped_temp_copy(original: Union[str, Path]) -> Iterator[Path]:
    """
    Acquire a temporary file beside the original.

    The temp file lives in the same directory so it can be swapped in with
    an atomic os.replace(). Whatever happens inside the block, the temp file
    is gone afterwards: either it was swapped in or it is deleted here.

    Yields:
        Path of the (empty) temporary file
    """
    original = Path(original)
    fd, temp_name = tempfile.mkstemp(
        prefix=TEMP_PREFIX, suffix=original.suffix, dir=str(original.parent)
    )
    os.close(fd)
    temp_path = Path(temp_name)
    try:
        yield temp_path
    finally:
        if temp_path.exists():
            temp_path.unlink()


def _copy_range(src: BinaryIO, dst: BinaryIO, offset: int, length: int) -> None:
    src.seek(offset)
    remaining = length
    while remaining > 0:
        buf = src.read(min(COPY_BUFFER_SIZE, remaining))
        if not buf:
            raise RepairError(f"Unexpected end of file while copying {length} bytes at {offset}")
        dst.write(buf)
        remaining -= len(buf)


def _write_chunk(src: BinaryIO, dst: BinaryIO, chunk_id: bytes, offset: int, size: int) -> None:
    dst.write(chunk_id + struct.pack("<I", size))
    _copy_range(src, dst, offset, size)
    if size & 1:
        dst.write(b"\x00")


def _can_patch_in_place(descriptor: ContainerDescriptor) -> bool:
    """Size patching is enough unless the layout itself must change."""
    if descriptor.needs_rewrite:
        return False
    last = descriptor.chunk_table[-1] if descriptor.chunk_table else None
    for entry in descriptor.chunk_table:
        # An odd chunk directly followed by the next header has no pad byte;
        # patching its size would misalign the walk.
        if entry is not last and entry.mismatched and entry.actual_size & 1:
            if entry.span != CHUNK_HEADER_SIZE + entry.actual_size + 1:
                return False
    return True


def _patch_sizes(descriptor: ContainerDescriptor, target: Path) -> None:
    shutil.copyfile(descriptor.path, target)
    with open(target, "r+b") as f:
        for entry in descriptor.chunk_table:
            if entry.mismatched:
                logger.debug(
                    f"Patching '{entry.name}' size {entry.declared_size} -> {entry.actual_size}"
                )
                f.seek(entry.size_field_offset)
                f.write(struct.pack("<I", entry.actual_size))
        f.seek(4)
        f.write(struct.pack("<I", descriptor.expected_riff_size))


def _rewrite_payloads(descriptor: ContainerDescriptor) -> List[Tuple[bytes, int, int]]:
    """(id, offset, length) of every payload, in the order _rewrite writes them."""
    fmt = descriptor.fmt_chunk
    payloads = [(FMT_CHUNK, fmt.payload_offset, fmt.actual_size)]
    payloads.extend(
        (entry.chunk_id, entry.payload_offset, entry.actual_size)
        for entry in descriptor.chunk_table
        if entry.chunk_id != FMT_CHUNK
    )
    if descriptor.data_chunk is None:
        tail_offset, tail_length = descriptor.unparsed_tail
        payloads.append((DATA_CHUNK, tail_offset, tail_length))
    return payloads


def _rewrite(descriptor: ContainerDescriptor, target: Path) -> None:
    with open(descriptor.path, "rb") as src, open(target, "wb") as dst:
        dst.write(b"RIFF\x00\x00\x00\x00WAVE")
        for chunk_id, offset, size in _rewrite_payloads(descriptor):
            _write_chunk(src, dst, chunk_id, offset, size)
        riff_size = dst.tell() - CHUNK_HEADER_SIZE
        dst.seek(4)
        dst.write(struct.pack("<I", riff_size))


def _unpatched_ranges(descriptor: ContainerDescriptor) -> List[Tuple[int, int]]:
    """Byte ranges of the file that size patching leaves alone."""
    patched = sorted(
        [4] + [entry.size_field_offset for entry in descriptor.chunk_table if entry.mismatched]
    )
    ranges = []
    position = 0
    for field_offset in patched:
        if field_offset > position:
            ranges.append((position, field_offset - position))
        position = max(position, field_offset + 4)
    if position < descriptor.file_size:
        ranges.append((position, descriptor.file_size - position))
    return ranges


def _payload_hashes(path: Path, payloads: List[Tuple[bytes, int, int]]) -> List[Tuple[bytes, str]]:
    return [
        (chunk_id, calculate_range_checksum(path, offset, length))
        for chunk_id, offset, length in payloads
    ]


def _verify_unchanged(
    descriptor: ContainerDescriptor,
    repaired: ContainerDescriptor,
    patched_in_place: bool,
) -> None:
    """
    Raise RepairError unless the repair changed nothing but chunk headers.

    A size patch must leave every byte outside the patched size fields
    identical; a rewrite must reproduce every chunk payload, in write order.
    """
    if patched_in_place:
        ranges = _unpatched_ranges(descriptor)
        unchanged = (
            repaired.file_size == descriptor.file_size
            and calculate_ranges_checksum(descriptor.path, ranges)
            == calculate_ranges_checksum(repaired.path, ranges)
        )
    else:
        repaired_payloads = [
            (entry.chunk_id, entry.payload_offset, entry.actual_size)
            for entry in repaired.chunk_table
        ]
        unchanged = (
            _payload_hashes(descriptor.path, _rewrite_payloads(descriptor))
            == _payload_hashes(repaired.path, repaired_payloads)
        )
    if not unchanged:
        raise RepairError("Audio payload changed during repair")


def repair(file_path: Union[str, Path], descriptor: ContainerDescriptor) -> bool:
    """
    Repair a WAV file in place, via a temporary copy.

    Args:
        file_path: Path to the file (must be the file the descriptor describes)
        descriptor: Result of container.inspect() for the file

    Returns:
        True if the file was fixed (or had nothing to fix), False if the
        defects are not repairable or the repair failed. On False the
        original file is untouched.

    Raises:
        TruncatedFile: if the data chunk runs past the end of the file
    """
    file_path = Path(file_path)

    if descriptor.is_valid:
        return True

    if DefectKind.TRUNCATED_FILE in descriptor.defects:
        data = descriptor.data_chunk
        raise TruncatedFile(
            f"{file_path.name}: data chunk declares {data.declared_size} bytes, "
            f"only {data.actual_size} present",
            details={"path": str(file_path)},
        )

    if not descriptor.is_repairable:
        logger.warning(
            f"{file_path.name}: defects are not repairable: "
            f"{sorted(d.value for d in descriptor.defects)}"
        )
        return False

    try:
        with scoped_temp_copy(file_path) as temp_path:
            patched_in_place = _can_patch_in_place(descriptor)
            if patched_in_place:
                _patch_sizes(descriptor, temp_path)
            else:
                _rewrite(descriptor, temp_path)

            repaired = inspect(temp_path)
            if not repaired.is_valid:
                raise RepairError(
                    f"Repaired copy still has defects: "
                    f"{sorted(d.value for d in repaired.defects)}"
                )
            _verify_unchanged(descriptor, repaired, patched_in_place)

            shutil.copymode(file_path, temp_path)
            os.replace(temp_path, file_path)
    except (OSError, CartIngestError) as e:
        logger.error(f"Failed to repair {file_path}: {e}")
        return False

    logger.warning(
        f"Repaired {file_path.name}: fixed {sorted(d.value for d in descriptor.defects)}"
    )
    return True
