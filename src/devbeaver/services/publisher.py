"""Publish a user's site by exporting it into a git working tree and pushing.

The repository (``DEVBEAVER_PUBLISH_REPO``) is expected to be a clone whose
remote triggers the hosting provider's deployment. Publishing never touches
the user's logical state.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from ..config import env_int
from ..domain.errors import DevBeaverError
from ..domain.site_models import PublishResult
from ..infrastructure.user_store import FileUserStateStore, get_user_store, validate_user_id
from .site_bundle import export_site

LOG = logging.getLogger("devbeaver.publish")

# Every user exports into the same working tree and index
_PUBLISH_LOCK = threading.Lock()


class GitCommandError(Exception):
    def __init__(self, cmd: Sequence[str], returncode: int, stdout: str, stderr: str) -> None:
        super().__init__(f"{' '.join(cmd)} exited with {returncode}")
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class GitSitePublisher:
    def __init__(
        self,
        store: FileUserStateStore,
        repo_dir: Optional[str | Path] = None,
        preview_url_template: Optional[str] = None,
        timeout: Optional[int] = None,
    ) -> None:
        self._store = store
        repo = repo_dir if repo_dir is not None else os.getenv("DEVBEAVER_PUBLISH_REPO")
        self._repo = Path(repo) if repo else None
        self._preview_template = (
            preview_url_template if preview_url_template is not None else os.getenv("DEVBEAVER_PREVIEW_URL_TEMPLATE")
        )
        self._timeout = timeout or env_int("DEVBEAVER_PUBLISH_TIMEOUT", 120)

    def _git(self, *args: str) -> str:
        cmd: List[str] = ["git", *args]
        try:
            proc = subprocess.run(
                cmd,
                cwd=str(self._repo),
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise GitCommandError(cmd, -1, "", str(exc)) from exc
        if proc.returncode != 0:
            raise GitCommandError(cmd, proc.returncode, proc.stdout.strip(), proc.stderr.strip())
        return proc.stdout.strip()

    def preview_url(self, user_id: str) -> Optional[str]:
        if not self._preview_template:
            return None
        return self._preview_template.format(user_id=user_id)

    def publish(self, user_id: str) -> PublishResult:
        try:
            uid = validate_user_id(user_id)
        except DevBeaverError as exc:
            return PublishResult(ok=False, detail=exc.message)
        if self._repo is None:
            return PublishResult(ok=False, detail="Publishing is not configured (DEVBEAVER_PUBLISH_REPO)")
        if not (self._repo / ".git").exists():
            return PublishResult(ok=False, detail=f"{self._repo} is not a git repository")

        with _PUBLISH_LOCK:
            return self._publish_locked(uid)

    def _publish_locked(self, uid: str) -> PublishResult:
        target = self._repo / uid
        try:
            # Drop files from an earlier export so removed images do not linger
            if target.exists():
                shutil.rmtree(target)
            count = export_site(self._store, uid, target)
        except (OSError, DevBeaverError) as exc:
            LOG.warning("publish_export_failed", extra={"user_id": uid, "err": str(exc)})
            return PublishResult(ok=False, detail=f"Export failed: {exc}")

        try:
            self._git("add", "--all", "--", uid)
            if not self._git("status", "--porcelain", "--", uid):
                LOG.info("publish_no_changes", extra={"user_id": uid})
                return PublishResult(ok=True, detail="No changes detected. Nothing to commit.", url=self.preview_url(uid))
            stamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
            self._git("commit", "-m", f"Update site for {uid} on {stamp}", "--", uid)
            self._git("pull", "--rebase")
            pushed = self._git("push")
        except GitCommandError as exc:
            LOG.warning(
                "publish_git_failed",
                extra={"user_id": uid, "cmd": " ".join(exc.cmd), "returncode": exc.returncode, "stderr": exc.stderr},
            )
            return PublishResult(ok=False, detail=f"{exc}: {exc.stderr or exc.stdout}")

        LOG.info("site_published", extra={"user_id": uid, "files": count})
        return PublishResult(ok=True, detail=pushed or "Pushed", url=self.preview_url(uid))


_publisher: Optional[GitSitePublisher] = None


def get_publisher() -> GitSitePublisher:
    global _publisher
    if _publisher is None:
        _publisher = GitSitePublisher(get_user_store())
    return _publisher
