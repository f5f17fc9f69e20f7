import os
from pathlib import Path

import aiofiles
import pandas as pd


# --------------------------------------
# Utility Helpers
# --------------------------------------

def _temp_path_for(path: Path) -> Path:
    """Sibling temp file used for write-then-rename."""
    return path.with_name(f".{path.name}.tmp")


# --------------------------------------
# Atomic Async Writes
# --------------------------------------

async def async_write_text_atomic(path: Path, content: str) -> Path:
    """
    Write a UTF-8 text file asynchronously.
    The content goes to a temp file first and is renamed over ``path``,
    so readers never observe a half-written artifact.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = _temp_path_for(path)

    async with aiofiles.open(tmp, "w", encoding="utf-8", newline="") as f:
        await f.write(content)
        await f.flush()

    os.replace(tmp, path)
    return path


async def async_write_csv_atomic(path: Path, frame: pd.DataFrame) -> Path:
    """
    Serialize a DataFrame to CSV and write it atomically.
    """
    return await async_write_text_atomic(path, frame.to_csv(index=False))

