"""Content hashing for ROM files."""

import zlib
import hashlib
from pathlib import Path

CHUNK_SIZE = 8 * 1024 * 1024  # 8MB chunks for better I/O efficiency

SUPPORTED_ALGORITHMS = ('sha256', 'sha1', 'md5', 'crc32')


def calculate_hash(file_path: Path, algorithm: str = 'sha256') -> str:
    """
    Calculate hash over the full byte stream of a file.

    The result depends only on file content, never on its name or location.

    Args:
        file_path: Path to file to hash
        algorithm: Hash algorithm ('sha256', 'sha1', 'md5', 'crc32')

    Returns:
        Lower-case hex digest; crc32 is returned as 8 upper-case hex digits
        to match RetroArch playlists

    Raises:
        OSError: If file cannot be read
        ValueError: If algorithm is not supported
    """
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"Unsupported hash algorithm: {algorithm}")

    if algorithm == 'crc32':
        crc = 0
        with open(file_path, 'rb') as f:
            while True:
                chunk = f.read(CHUNK_SIZE)
                if not chunk:
                    break
                crc = zlib.crc32(chunk, crc)

        # Convert to unsigned 32-bit value and format as uppercase hex
        crc = crc & 0xFFFFFFFF
        return f"{crc:08X}"

    hasher = hashlib.new(algorithm)
    with open(file_path, 'rb') as f:
        while True:
            chunk = f.read(CHUNK_SIZE)
            if not chunk:
                break
            hasher.update(chunk)

    return hasher.hexdigest()


def format_file_size(size_bytes: int) -> str:
    """
    Format file size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted string (e.g., "1.5 MB", "750 KB")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    else:
        return f"{size_bytes / (1024 * 1024 * 1024):.2f} GB"
