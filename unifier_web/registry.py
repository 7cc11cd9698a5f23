"""
Upload registry: validated input files, their probed metadata and their
expiry timers.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import unifier

from .errors import ValidationError
from .retention import RetentionManager

logger = logging.getLogger("unifier-web")

CHUNK_SIZE = 1024 * 1024


@dataclass
class UploadedAsset:
    id:            str
    original_name: str
    path:          Path
    size:          int
    media_kind:    str
    metadata:      dict
    uploaded_at:   float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "id":           self.id,
            "originalName": self.original_name,
            "size":         self.size,
            "mediaKind":    self.media_kind,
            "metadata":     self.metadata,
            "uploadedAt":   self.uploaded_at,
        }


class UploadRegistry:
    """
    Stores uploads as <root>/media_<id><ext> and keeps them for `ttl`
    seconds unless a job claims them first. A claimed asset lives until the
    last job referencing it releases it.

    Uploads are any object with a `filename` attribute and an async
    `read(size)` method (FastAPI's UploadFile in production).
    """

    def __init__(
        self,
        root: Path,
        engine,
        retention: RetentionManager,
        max_bytes: int,
        ttl: float,
        max_files: int = 20,
    ) -> None:
        self.root      = Path(root)
        self.engine    = engine
        self.retention = retention
        self.max_bytes = max_bytes
        self.ttl       = ttl
        self.max_files = max_files
        self._assets: dict[str, UploadedAsset] = {}
        self._refs: dict[str, int] = {}
        self.root.mkdir(parents=True, exist_ok=True)

    # -- validation -----------------------------------------------------------

    def check_name(self, filename: Optional[str]) -> str:
        if not filename:
            raise ValidationError("Upload is missing a filename")
        name = Path(filename).name
        ext = Path(name).suffix.lower()
        if ext not in unifier.MEDIA_EXTENSIONS:
            raise ValidationError(f"{name}: unsupported file type {ext or '(none)'}")
        return name

    async def _store(self, upload, dest: Path, name: str) -> int:
        size = 0
        try:
            with open(dest, "wb") as f:
                while True:
                    chunk = await upload.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    size += len(chunk)
                    if size > self.max_bytes:
                        raise ValidationError(f"{name}: file exceeds the {self.max_bytes} byte limit")
                    f.write(chunk)
            if size == 0:
                raise ValidationError(f"{name}: file is empty")
        except BaseException:
            dest.unlink(missing_ok=True)
            raise
        return size

    # -- registration ---------------------------------------------------------

    async def register(self, upload) -> UploadedAsset:
        name = self.check_name(getattr(upload, "filename", None))
        asset_id = uuid.uuid4().hex
        dest = self.root / f"media_{asset_id}{Path(name).suffix.lower()}"
        size = await self._store(upload, dest, name)

        try:
            metadata = await self.engine.probe(str(dest))
        except unifier.ProbeError as e:
            logger.warning(f"Probe failed for {name}: {e}")
            metadata = dict(unifier.FALLBACK_METADATA)
        except BaseException:
            dest.unlink(missing_ok=True)
            raise

        asset = UploadedAsset(
            id=asset_id,
            original_name=name,
            path=dest,
            size=size,
            media_kind=unifier.media_kind(name),
            metadata=metadata,
        )
        self._assets[asset_id] = asset
        self.retention.schedule(f"asset:{asset_id}", self.ttl, self._expire, asset_id)
        logger.info(f"Upload accepted: {name} ({size} bytes, {metadata['duration']:.1f}s) -> {asset_id}")
        return asset

    async def register_batch(self, uploads: list) -> list[UploadedAsset]:
        """
        All-or-nothing: names are checked before anything is written, and if
        any file is then rejected the files already accepted from this batch
        are revoked.
        """
        if not uploads:
            raise ValidationError("No files uploaded")
        if len(uploads) > self.max_files:
            raise ValidationError(f"Too many files: {len(uploads)} (max {self.max_files})")
        for upload in uploads:
            self.check_name(getattr(upload, "filename", None))

        accepted: list[UploadedAsset] = []
        try:
            for upload in uploads:
                accepted.append(await self.register(upload))
        except Exception as e:
            logger.warning(f"Upload batch rejected: {e}")
            for asset in accepted:
                self.revoke(asset.id)
            raise
        return accepted

    def lookup(self, asset_id: str) -> Optional[UploadedAsset]:
        return self._assets.get(asset_id)

    # -- job references -------------------------------------------------------

    def claim(self, asset_ids) -> None:
        """
        Take one reference per distinct asset for a job and stop their expiry
        timers. Every claim must be paired with one release().
        """
        for asset_id in set(asset_ids):
            self.retention.cancel(f"asset:{asset_id}")
            self._refs[asset_id] = self._refs.get(asset_id, 0) + 1

    def release(self, asset_ids) -> list[str]:
        """
        Drop a job's references. An asset is revoked once no job holds it.
        Returns the ids that were revoked.
        """
        revoked = []
        for asset_id in set(asset_ids):
            remaining = self._refs.get(asset_id, 0) - 1
            if remaining > 0:
                self._refs[asset_id] = remaining
                continue
            self._refs.pop(asset_id, None)
            if self.revoke(asset_id):
                revoked.append(asset_id)
        return revoked

    def holders(self, asset_id: str) -> int:
        return self._refs.get(asset_id, 0)

    def revoke(self, asset_id: str) -> bool:
        """Remove the entry and its file. Safe to call more than once."""
        self.retention.cancel(f"asset:{asset_id}")
        asset = self._assets.pop(asset_id, None)
        if asset is None:
            return False
        asset.path.unlink(missing_ok=True)
        return True

    def _expire(self, asset_id: str) -> None:
        if self.revoke(asset_id):
            logger.info(f"Upload expired: {asset_id}")

    def count(self) -> int:
        return len(self._assets)
