"""
machinist/utils/ephemeral_file.py

Async context manager for short-lived secret files (SSH private keys,
known_hosts) in `/dev/shm`. Each use gets its own private directory; the files
and the directory are removed on exit even if the body raises.
"""

import os
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict

import aiofiles


@asynccontextmanager
async def ephemeral_files(
    contents: Dict[str, str],
    *,
    prefix: str = "machinist-",
    parent_dir: str = "/dev/shm",
    file_mode: int = 0o600,
) -> AsyncGenerator[Dict[str, str], None]:
    """
    Write each entry of `contents` (file name -> text) into a fresh private
    directory and yield a dict of file name -> absolute path.

    Args:
        contents: File names mapped to the text each file should hold.
        prefix: Prefix for the ephemeral directory name.
        parent_dir: Where the ephemeral directory lives. `/dev/shm` keeps keys off disk.
        file_mode: Permissions applied to every written file.

    Yields:
        Dict[str, str]: file name -> path of the written file.
    """
    if not contents:
        raise ValueError("ephemeral_files needs at least one file to write.")

    ephemeral_dir = tempfile.mkdtemp(dir=parent_dir, prefix=prefix)
    paths = {name: os.path.join(ephemeral_dir, name) for name in contents}

    try:
        for name, text in contents.items():
            async with aiofiles.open(paths[name], "w", encoding="utf-8") as fh:
                await fh.write(text)
            os.chmod(paths[name], file_mode)
        yield paths
    finally:
        for path in paths.values():
            if os.path.lexists(path):
                os.remove(path)
        if os.path.isdir(ephemeral_dir):
            os.rmdir(ephemeral_dir)
