"""
Test File Generator

Writes a file of random printable text for exercising transfers.
"""

import logging
import random
from pathlib import Path
from typing import Callable, Optional

import aiofiles

logger = logging.getLogger(__name__)

CHARSET = b'ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789\n'

# Maps every byte value onto the charset
_TRANSLATE = bytes(CHARSET[i % len(CHARSET)] for i in range(256))

DEFAULT_SIZE = 100 * 1024 * 1024  # 100 MB
BLOCK_SIZE = 1024 * 1024  # 1 MB blocks for generation


async def generate_file(path: Path, size: int = DEFAULT_SIZE,
                        block_size: int = BLOCK_SIZE,
                        progress_callback: Optional[Callable[[int, int], None]] = None,
                        seed: Optional[int] = None) -> Path:
    """
    Write ``size`` bytes of random text to ``path``.

    Args:
        path: Output file (parent directories are created)
        size: Total bytes to write
        block_size: Bytes generated and written per step
        progress_callback: Called with (bytes_written, size) after each block
        seed: Seed for reproducible content

    Returns:
        The path written
    """
    if size < 0:
        raise ValueError(f"size must not be negative, got {size}")

    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    rng = random.Random(seed)

    written = 0
    async with aiofiles.open(path, 'wb') as f:
        while written < size:
            length = min(block_size, size - written)
            await f.write(rng.randbytes(length).translate(_TRANSLATE))
            written += length
            if progress_callback:
                progress_callback(written, size)

    logger.info(f"Generated {size / (1024 * 1024):.2f} MB test file at {path}")
    return path
