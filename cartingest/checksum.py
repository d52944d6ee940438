"""
Checksum utilities for audio payload verification.

Supports xxhash (fast payload comparison during repair) and SHA1
(the hash stored with each cut in the catalog).
"""

import hashlib
from pathlib import Path
from typing import Iterable, Optional, Tuple, Union

import xxhash


def _hash_object(algorithm: str):
    algorithm = algorithm.lower()
    if algorithm == "xxhash64":
        return xxhash.xxh64()
    elif algorithm == "xxhash128":
        return xxhash.xxh128()
    elif algorithm == "sha1":
        return hashlib.sha1()
    elif algorithm == "sha256":
        return hashlib.sha256()
    elif algorithm == "md5":
        return hashlib.md5()
    raise ValueError(
        f"Unsupported algorithm: {algorithm}. "
        f"Use 'xxhash64', 'xxhash128', 'sha1', 'sha256' or 'md5'"
    )


def calculate_checksum(
    file_path: Union[str, Path],
    algorithm: str = "sha1",
    chunk_size: int = 65536,
) -> str:
    """
    Calculate checksum for a whole file.

    Args:
        file_path: Path to the file
        algorithm: Hash algorithm ('xxhash64', 'xxhash128', 'sha1', 'sha256', 'md5')
        chunk_size: Size of chunks to read

    Returns:
        Hex digest of the file

    Raises:
        ValueError: If algorithm is not supported
        FileNotFoundError: If file doesn't exist
    """
    file_path = Path(file_path)

    if not file_path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")

    hash_obj = _hash_object(algorithm)

    with open(file_path, "rb") as f:
        while chunk := f.read(chunk_size):
            hash_obj.update(chunk)

    return hash_obj.hexdigest()


def calculate_range_checksum(
    file_path: Union[str, Path],
    offset: int,
    length: int,
    algorithm: str = "xxhash64",
    chunk_size: int = 65536,
) -> str:
    """
    Calculate checksum over a byte range of a file.

    Used to prove that a repair left the audio payload untouched: the
    data chunk payload is hashed before and after the rewrite.

    Args:
        file_path: Path to the file
        offset: First byte of the range
        length: Number of bytes in the range
        algorithm: Hash algorithm
        chunk_size: Size of chunks to read

    Returns:
        Hex digest of the range
    """
    return calculate_ranges_checksum(file_path, [(offset, length)], algorithm, chunk_size)


def calculate_ranges_checksum(
    file_path: Union[str, Path],
    ranges: Iterable[Tuple[int, int]],
    algorithm: str = "xxhash64",
    chunk_size: int = 65536,
) -> str:
    """
    Calculate one checksum over several (offset, length) byte ranges, in order.

    Used to compare everything a repair was not meant to change: the file
    minus the size fields it patched.
    """
    hash_obj = _hash_object(algorithm)

    with open(file_path, "rb") as f:
        for offset, length in ranges:
            f.seek(offset)
            remaining = length
            while remaining > 0:
                chunk = f.read(min(chunk_size, remaining))
                if not chunk:
                    break
                hash_obj.update(chunk)
                remaining -= len(chunk)

    return hash_obj.hexdigest()


def verify_checksum(
    file_path: Union[str, Path],
    expected_checksum: str,
    algorithm: str = "sha1",
    offset: Optional[int] = None,
    length: Optional[int] = None,
) -> bool:
    """
    Verify a file (or a byte range of it) against an expected checksum.

    Returns:
        True if checksum matches, False otherwise
    """
    if offset is not None and length is not None:
        actual = calculate_range_checksum(file_path, offset, length, algorithm)
    else:
        actual = calculate_checksum(file_path, algorithm)
    return actual.lower() == expected_checksum.lower()
