#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Session persistence: a single named JSON blob holding the uploaded file name,
the original records, the processed records so far and the resumable flag.
"""

import os
import json
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from product_records import ProcessedRecord, Record
from seo_utils import get_logger

logger = get_logger("session")

SESSION_KEY = "meta-generator-session"

# ---------- Blob Stores ----------
class BlobStore:
    """Minimal key-value store for text blobs."""

    def get(self, name: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, name: str, value: str) -> None:
        raise NotImplementedError

    def remove(self, name: str) -> None:
        raise NotImplementedError


class MemoryBlobStore(BlobStore):
    def __init__(self):
        self._blobs: Dict[str, str] = {}

    def get(self, name: str) -> Optional[str]:
        return self._blobs.get(name)

    def set(self, name: str, value: str) -> None:
        self._blobs[name] = value

    def remove(self, name: str) -> None:
        self._blobs.pop(name, None)


class FileBlobStore(BlobStore):
    """One ``<name>.json`` file per blob inside ``base_dir``."""

    def __init__(self, base_dir: Union[str, os.PathLike]):
        self._base_dir = Path(base_dir)
        self._base_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, name: str) -> Path:
        return self._base_dir / f"{name}.json"

    def get(self, name: str) -> Optional[str]:
        path = self.path_for(name)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, name: str, value: str) -> None:
        # temp file + rename: readers see the old blob or the new one
        fd, tmp = tempfile.mkstemp(dir=self._base_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(value)
            os.replace(tmp, self.path_for(name))
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def remove(self, name: str) -> None:
        path = self.path_for(name)
        if path.exists():
            path.unlink()

# ---------- Snapshot ----------
@dataclass
class SessionSnapshot:
    file_name: str
    original_records: List[Record] = field(default_factory=list)
    processed_records: List[ProcessedRecord] = field(default_factory=list)
    resumable: bool = False

    def to_json(self) -> str:
        return json.dumps({
            "fileName": self.file_name,
            "originalRecords": [r.to_dict() for r in self.original_records],
            "processedRecords": [p.to_row() for p in self.processed_records],
            "resumable": self.resumable,
        }, ensure_ascii=False)

    @classmethod
    def from_json(cls, text: str) -> "SessionSnapshot":
        data = json.loads(text)
        if not (data.get("fileName") and isinstance(data.get("originalRecords"), list)
                and isinstance(data.get("processedRecords"), list)):
            raise ValueError("Saved session is missing required fields.")
        return cls(
            file_name=data["fileName"],
            original_records=[Record.from_dict(r) for r in data["originalRecords"]],
            processed_records=[ProcessedRecord.from_row(r) for r in data["processedRecords"]],
            resumable=bool(data.get("resumable", False)),
        )

# ---------- Store ----------
class SessionStore:
    """Load / save / clear the single saved session."""

    def __init__(self, blobs: BlobStore, name: str = SESSION_KEY):
        self.blobs = blobs
        self.name = name

    def load(self) -> Optional[SessionSnapshot]:
        raw = self.blobs.get(self.name)
        if not raw:
            return None
        try:
            return SessionSnapshot.from_json(raw)
        except (ValueError, TypeError, AttributeError) as e:
            logger.error(f"Failed to parse saved session: {e}")
            self.blobs.remove(self.name)
            return None

    def save(self, snapshot: SessionSnapshot) -> None:
        self.blobs.set(self.name, snapshot.to_json())
        logger.debug(f"Session saved: {len(snapshot.processed_records)}/{len(snapshot.original_records)} "
                     f"processed, resumable={snapshot.resumable}")

    def clear(self) -> None:
        self.blobs.remove(self.name)
        logger.debug("Session cleared")
