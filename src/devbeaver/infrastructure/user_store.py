from __future__ import annotations

import json
import logging
import os
import re
import shutil
import tempfile
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

from pydantic import ValidationError

from ..config import data_dir
from ..domain.errors import InputValidationError, StorageError
from ..domain.site_models import ConversationTurn, SiteArtifact, SiteProfile

LOG = logging.getLogger("devbeaver.store")

_USER_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.@-]{0,127}$")
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")

CONVERSATION_FILE = "conversation.json"
ARTIFACT_FILE = "artifact.json"
UPLOADS_DIR = "uploads"


def validate_user_id(user_id: Optional[str]) -> str:
    value = (user_id or "").strip()
    if not value:
        raise InputValidationError("Missing user id")
    if not _USER_ID_RE.match(value) or ".." in value:
        raise InputValidationError(f"Invalid user id: {value!r}")
    return value


def sanitize_filename(name: str) -> str:
    base = Path(name or "").name
    safe = _UNSAFE_NAME_CHARS.sub("_", base).strip("._")
    return safe[-80:] or "image"


class UserStateStore(Protocol):
    def load(self, user_id: str) -> Tuple[SiteProfile, List[ConversationTurn]]: ...
    def save(self, user_id: str, profile: SiteProfile, history: List[ConversationTurn]) -> None: ...
    def load_artifact(self, user_id: str) -> SiteArtifact: ...
    def save_artifact(self, user_id: str, artifact: SiteArtifact) -> None: ...
    def store_image(self, user_id: str, original_name: str, data: bytes) -> str: ...
    def read_image(self, user_id: str, stored_name: str) -> bytes: ...
    def delete_image(self, user_id: str, stored_name: str) -> None: ...
    def has_image(self, user_id: str, stored_name: str) -> bool: ...
    def list_images(self, user_id: str) -> List[str]: ...
    def reset(self, user_id: str) -> None: ...


class FileUserStateStore:
    """JSON file-backed per-user state.

    Structure, one directory per user:
      conversation.json  {"profile": {...}, "history": [{"user", "bot"}, ...]}
      artifact.json      {"markup", "styling", "script", "revision", "generatedAt"}
      uploads/           image binaries

    Profile and history share one document so a single rename commits both.
    Every document is written to a temp file and renamed into place. Callers
    serialize writers through the StateSynchronizer; reads need no lock.
    """

    def __init__(self, root: Optional[str | Path] = None) -> None:
        self._root = Path(root) if root is not None else data_dir()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def user_dir(self, user_id: str) -> Path:
        return self._root / validate_user_id(user_id)

    def uploads_dir(self, user_id: str) -> Path:
        return self.user_dir(user_id) / UPLOADS_DIR

    # ------------------------------------------------------------------
    # Profile & history
    # ------------------------------------------------------------------
    def load(self, user_id: str) -> Tuple[SiteProfile, List[ConversationTurn]]:
        path = self.user_dir(user_id) / CONVERSATION_FILE
        doc = self._read_json(path)
        if doc is None:
            return SiteProfile(), []
        try:
            profile = SiteProfile.model_validate(doc.get("profile") or {})
            history = [ConversationTurn.model_validate(t) for t in (doc.get("history") or [])]
        except ValidationError as exc:
            raise StorageError(f"Corrupt conversation document for user {user_id}: {exc}") from exc
        return profile, history

    def save(self, user_id: str, profile: SiteProfile, history: List[ConversationTurn]) -> None:
        if history and history[-1].is_pending:
            raise StorageError("Refusing to persist a pending conversation turn")
        doc = {
            "profile": profile.to_document(),
            "history": [t.model_dump() for t in history],
        }
        self._write_json(self.user_dir(user_id) / CONVERSATION_FILE, doc)

    # ------------------------------------------------------------------
    # Artifact
    # ------------------------------------------------------------------
    def load_artifact(self, user_id: str) -> SiteArtifact:
        doc = self._read_json(self.user_dir(user_id) / ARTIFACT_FILE)
        if doc is None:
            return SiteArtifact()
        try:
            return SiteArtifact.model_validate(doc)
        except ValidationError as exc:
            raise StorageError(f"Corrupt artifact document for user {user_id}: {exc}") from exc

    def save_artifact(self, user_id: str, artifact: SiteArtifact) -> None:
        self._write_json(
            self.user_dir(user_id) / ARTIFACT_FILE,
            artifact.model_dump(mode="json", by_alias=True),
        )

    # ------------------------------------------------------------------
    # Image binaries
    # ------------------------------------------------------------------
    def store_image(self, user_id: str, original_name: str, data: bytes) -> str:
        folder = self.uploads_dir(user_id)
        stored_name = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}-{sanitize_filename(original_name)}"
        try:
            folder.mkdir(parents=True, exist_ok=True)
            # Exclusive create: a name collision is an error, never an overwrite
            with open(folder / stored_name, "xb") as fh:
                fh.write(data)
        except OSError as exc:
            raise StorageError(f"Failed to store image {original_name!r}: {exc}") from exc
        return stored_name

    def read_image(self, user_id: str, stored_name: str) -> bytes:
        path = self.uploads_dir(user_id) / Path(stored_name).name
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise
        except OSError as exc:
            raise StorageError(f"Failed to read image {stored_name!r}: {exc}") from exc

    def delete_image(self, user_id: str, stored_name: str) -> None:
        path = self.uploads_dir(user_id) / Path(stored_name).name
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to delete image {stored_name!r}: {exc}") from exc

    def has_image(self, user_id: str, stored_name: str) -> bool:
        return (self.uploads_dir(user_id) / Path(stored_name).name).is_file()

    def list_images(self, user_id: str) -> List[str]:
        folder = self.uploads_dir(user_id)
        if not folder.is_dir():
            return []
        return sorted(p.name for p in folder.iterdir() if p.is_file())

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------
    def reset(self, user_id: str) -> None:
        """Write default documents and drop all image binaries.

        The caller must hold both resource locks for the user.
        """

        self.save(user_id, SiteProfile(), [])
        self.save_artifact(user_id, SiteArtifact())
        folder = self.uploads_dir(user_id)
        if not folder.exists():
            return
        trash = folder.with_name(f".{UPLOADS_DIR}-trash-{uuid.uuid4().hex[:8]}")
        try:
            # One rename makes every upload disappear at once
            os.replace(folder, trash)
        except OSError as exc:
            raise StorageError(f"Failed to clear uploads for user {user_id}: {exc}") from exc
        try:
            shutil.rmtree(trash)
        except OSError as exc:
            LOG.warning("uploads_trash_cleanup_failed", extra={"user_id": user_id, "path": str(trash), "err": str(exc)})

    # ------------------------------------------------------------------
    # File helpers
    # ------------------------------------------------------------------
    def _read_json(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"Failed to read {path.name}: {exc}") from exc
        if not text.strip():
            return None
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StorageError(f"{path.name} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise StorageError(f"{path.name} does not hold a JSON object")
        return data

    def _write_json(self, path: Path, payload: Dict[str, Any]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
        except OSError as exc:
            raise StorageError(f"Failed to stage {path.name}: {exc}") from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2, ensure_ascii=False)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, path)
        except BaseException as exc:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            if isinstance(exc, OSError):
                raise StorageError(f"Failed to write {path.name}: {exc}") from exc
            raise


_store: Optional[FileUserStateStore] = None


def get_user_store() -> FileUserStateStore:
    global _store
    if _store is None:
        _store = FileUserStateStore()
    return _store
