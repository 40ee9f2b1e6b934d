"""
Archival Finalizer

Once every artifact of a background job has been written, the files are
wrapped into one ZIP archive, the originals are removed and a manifest
sidecar (``<archive>.txt``) records per-file timing, size and errors.

Manifest layout (indented JSON list, one object per artifact, archive last):

    [
      {"path": ".../shop-struct-1700000000.sql", "start": "...", "end": "...",
       "elapsed": 0.82, "size": 2311, "compressed": false, "error": ""},
      ...
      {"path": ".../shop-sql-1700000000.zip", ..., "compressed": true}
    ]
"""
from __future__ import annotations

import json
import logging
import os
import zipfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from dbmanager.core.errors import ArchivalError, FilesystemError

logger = logging.getLogger(__name__)

MANIFEST_SUFFIX = ".txt"


@dataclass
class ArtifactDescriptor:
    """One produced file."""
    path: str
    start: datetime = field(default_factory=datetime.now)
    end: Optional[datetime] = None
    elapsed: float = 0.0
    size: int = 0
    compressed: bool = False
    error: str = ""

    def mark_finished(self, end: Optional[datetime] = None):
        self.end = end or datetime.now()
        self.elapsed = (self.end - self.start).total_seconds()

    def stat(self):
        """Record the file size; a stat failure is kept as the entry's error."""
        try:
            self.size = os.path.getsize(self.path)
        except OSError as e:
            self.error = str(e)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "start": self.start.isoformat(),
            "end": self.end.isoformat() if self.end else None,
            "elapsed": round(self.elapsed, 6),
            "size": self.size,
            "compressed": self.compressed,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArtifactDescriptor":
        end = data.get("end")
        return cls(
            path=data["path"],
            start=datetime.fromisoformat(data["start"]),
            end=datetime.fromisoformat(end) if end else None,
            elapsed=data.get("elapsed", 0.0),
            size=data.get("size", 0),
            compressed=data.get("compressed", False),
            error=data.get("error", ""),
        )


class JobManifest:
    """Ordered record of all artifacts of one job."""

    def __init__(self, entries: Optional[List[ArtifactDescriptor]] = None):
        self.entries: List[ArtifactDescriptor] = list(entries or [])

    def append(self, entry: ArtifactDescriptor) -> ArtifactDescriptor:
        self.entries.append(entry)
        return entry

    def find(self, path: Union[str, Path]) -> Optional[ArtifactDescriptor]:
        path = str(path)
        for entry in self.entries:
            if entry.path == path:
                return entry
        return None

    @property
    def archive(self) -> Optional[ArtifactDescriptor]:
        for entry in reversed(self.entries):
            if entry.compressed:
                return entry
        return None

    def to_list(self) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self.entries]

    def to_text(self) -> str:
        return json.dumps(self.to_list(), indent=2, ensure_ascii=False)

    def __iter__(self) -> Iterator[ArtifactDescriptor]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)


def manifest_path_for(archive_path: Union[str, Path]) -> Path:
    return Path(str(archive_path) + MANIFEST_SUFFIX)


def finalize_archive(
    manifest: JobManifest,
    files: Sequence[Union[str, Path]],
    archive_path: Union[str, Path],
) -> ArtifactDescriptor:
    """
    Compress ``files`` into ``archive_path`` and persist the manifest.

    On compression failure the originals are kept, a partial archive is
    removed, no sidecar is written and ArchivalError is raised.

    Returns:
        The archive's manifest entry (appended last)
    """
    archive_path = Path(archive_path)
    paths = [Path(f) for f in files]

    for path in paths:
        entry = manifest.find(path)
        if entry is not None:
            entry.stat()

    archive_entry = ArtifactDescriptor(path=str(archive_path), compressed=True)
    try:
        with zipfile.ZipFile(archive_path, "w", zipfile.ZIP_DEFLATED) as zf:
            for path in paths:
                zf.write(path, path.name)
    except (OSError, zipfile.BadZipFile) as e:
        if archive_path.exists():
            try:
                archive_path.unlink()
            except OSError:
                logger.warning(f"Could not remove partial archive {archive_path}")
        raise ArchivalError(path=str(archive_path), reason=str(e),
                            details={"path": str(archive_path)}) from e

    for path in paths:
        try:
            path.unlink()
        except OSError as e:
            logger.warning(f"Failed to remove {path} after archiving: {e}")

    archive_entry.stat()
    archive_entry.mark_finished()
    manifest.append(archive_entry)

    save_manifest(manifest, manifest_path_for(archive_path))
    logger.info(f"Archived {len(paths)} file(s) into {archive_path} ({archive_entry.size} bytes)")
    return archive_entry


def save_manifest(manifest: JobManifest, path: Union[str, Path]) -> Path:
    path = Path(path)
    try:
        path.write_text(manifest.to_text(), encoding="utf-8")
    except OSError as e:
        raise FilesystemError(reason=f"cannot write manifest {path}: {e}",
                              details={"path": str(path)}) from e
    return path


def load_manifest(path: Union[str, Path]) -> Optional[JobManifest]:
    """
    Load a manifest sidecar.

    Returns None if the file does not exist or is not a manifest.
    """
    p = Path(path)
    if not p.exists():
        return None
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
        if not isinstance(data, list):
            return None
        return JobManifest([ArtifactDescriptor.from_dict(d) for d in data])
    except (OSError, ValueError, KeyError, TypeError):
        return None
