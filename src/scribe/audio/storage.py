"""Filesystem store for audio artifacts, addressed by opaque audio refs.

A ref is ``<32 hex chars>.<ext>``; anything else is rejected so a ref can
never name a path outside the store root.
"""

from __future__ import annotations

import asyncio
import re
import shutil
import uuid
from pathlib import Path

import structlog

from src.scribe.errors import PreconditionError

logger = structlog.get_logger(__name__)

_REF_PATTERN = re.compile(r"^[0-9a-f]{32}\.[a-z0-9]{1,5}$")


def fits_without_compression(path: Path, max_upload_mb: int) -> bool:
    """True when the original file is already small enough to submit as is."""
    return path.stat().st_size <= max_upload_mb * 1024 * 1024


class AudioStore:
    """Artifact store rooted at a directory.

    Args:
        root: Directory holding artifacts (created on first use).
    """

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, audio_ref: str) -> Path:
        if not _REF_PATTERN.match(audio_ref):
            raise PreconditionError(f"Invalid audio reference '{audio_ref}'")
        return self._root / audio_ref

    async def put(self, source: Path) -> str:
        """Move ``source`` into the store and return its new ref."""
        suffix = (source.suffix.lstrip(".") or "bin").lower()
        audio_ref = f"{uuid.uuid4().hex}.{suffix}"
        destination = self._path(audio_ref)
        await asyncio.to_thread(self._root.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.move, str(source), str(destination))
        logger.info("audio_stored", audio_ref=audio_ref, size_bytes=destination.stat().st_size)
        return audio_ref

    def exists(self, audio_ref: str | None) -> bool:
        if not audio_ref:
            return False
        try:
            return self._path(audio_ref).is_file()
        except PreconditionError:
            return False

    def open_path(self, audio_ref: str) -> Path:
        """Resolve a ref to a readable file path.

        Raises:
            PreconditionError: the ref is malformed or the artifact is gone.
        """
        path = self._path(audio_ref)
        if not path.is_file():
            raise PreconditionError("No audio file available")
        return path

    async def release(self, audio_ref: str) -> bool:
        """Delete an artifact. Returns False if it was already gone."""
        path = self._path(audio_ref)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        logger.info("audio_released", audio_ref=audio_ref)
        return True
