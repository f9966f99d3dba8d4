from __future__ import annotations

import io
import logging
import zipfile
from pathlib import Path
from typing import Dict

from ..domain.errors import StorageError
from ..infrastructure.user_store import FileUserStateStore, UPLOADS_DIR

LOG = logging.getLogger("devbeaver.bundle")

SITE_MARKUP_FILE = "index.html"
SITE_STYLING_FILE = "styles.css"
SITE_SCRIPT_FILE = "script.js"


def collect_site_files(store: FileUserStateStore, user_id: str) -> Dict[str, bytes]:
    """Return ``{relative path: bytes}`` for the user's current site.

    Read-only. An image removed between listing and reading (reset in flight)
    is skipped.
    """

    artifact = store.load_artifact(user_id)
    files: Dict[str, bytes] = {
        SITE_MARKUP_FILE: artifact.markup.encode("utf-8"),
        SITE_STYLING_FILE: artifact.styling.encode("utf-8"),
        SITE_SCRIPT_FILE: artifact.script.encode("utf-8"),
    }
    for name in store.list_images(user_id):
        try:
            files[f"{UPLOADS_DIR}/{name}"] = store.read_image(user_id, name)
        except FileNotFoundError:
            LOG.info("bundle_image_vanished", extra={"user_id": user_id, "stored_name": name})
    return files


def build_site_zip(store: FileUserStateStore, user_id: str) -> bytes:
    files = collect_site_files(store, user_id)
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path, content in files.items():
            zf.writestr(path, content)
    buffer.seek(0)
    return buffer.getvalue()


def export_site(store: FileUserStateStore, user_id: str, target: Path) -> int:
    """Write the user's site files under ``target``; returns the file count."""

    files = collect_site_files(store, user_id)
    try:
        for rel, content in files.items():
            path = target / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content)
    except OSError as exc:
        raise StorageError(f"Failed to export site for user {user_id}: {exc}") from exc
    return len(files)
