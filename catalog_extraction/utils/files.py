from __future__ import annotations

import mimetypes
from typing import Optional


def safe_filename(name: str) -> str:
    cleaned = "".join(c for c in name if c.isalnum() or c in (".", "_", "-", " "))
    cleaned = cleaned.strip()
    return cleaned[:255] or "upload.bin"


def guess_media_type(filename: str, declared: Optional[str] = None) -> str:
    if declared and declared.startswith("image/"):
        return declared
    guessed, _ = mimetypes.guess_type(filename)
    if guessed and guessed.startswith("image/"):
        return guessed
    return "image/jpeg"
