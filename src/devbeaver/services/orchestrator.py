"""Site orchestration: conversational turns, media ingestion, regeneration.

Every public operation validates the user id, runs under the per-user locks it
needs, and returns an ``OperationResult``. Failures never escape as
exceptions; they come back as ``{ok: False, error: {kind, message,
retryable}}`` and leave persisted state untouched.
"""

from __future__ import annotations

import logging
import mimetypes
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar, Union

from ..config import env_int, max_images_per_upload
from ..domain.errors import (
    DevBeaverError,
    InputValidationError,
    MalformedResponseError,
    StorageError,
    UpstreamError,
)
from ..domain.site_models import (
    ChatTurnResult,
    ConversationTurn,
    ImageFailure,
    ImageRecord,
    ImageUpload,
    IngestionResult,
    OperationError,
    OperationResult,
    RegenerationResult,
    ResetResult,
    ResourceKind,
    SiteArtifact,
    UserSnapshot,
)
from ..infrastructure.locks import StateSynchronizer
from ..infrastructure.user_store import FileUserStateStore, UPLOADS_DIR, get_user_store, validate_user_id
from ..observability.metrics import record_outcome
from .generation import GenerationClient, get_generation_client
from .prompts import build_chat_messages, build_image_messages, build_site_messages
from .response_parsing import merge_profile, parse_chat_reply, parse_site_update

LOG = logging.getLogger("devbeaver.orchestrator")

T = TypeVar("T")

_RAW_LOG_CHARS = 500


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _truncate(text: Optional[str], limit: int = _RAW_LOG_CHARS) -> str:
    if not text:
        return ""
    return text if len(text) <= limit else text[:limit] + "...[truncated]"


def _resolve_mime(upload: ImageUpload) -> Optional[str]:
    mime = (upload.mime_type or "").split(";")[0].strip().lower()
    if mime and mime != "application/octet-stream":
        return mime
    guessed, _ = mimetypes.guess_type(upload.original_name or "")
    return guessed


class SiteOrchestrator:
    def __init__(
        self,
        store: FileUserStateStore,
        generator: GenerationClient,
        synchronizer: Optional[StateSynchronizer] = None,
        image_workers: Optional[int] = None,
    ) -> None:
        self._store = store
        self._generator = generator
        self._sync = synchronizer or StateSynchronizer(store.root)
        self._image_workers = image_workers or env_int("DEVBEAVER_IMAGE_WORKERS", 4)

    @property
    def store(self) -> FileUserStateStore:
        return self._store

    @property
    def synchronizer(self) -> StateSynchronizer:
        return self._sync

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------
    def chat(self, user_id: str, message: str) -> OperationResult[ChatTurnResult]:
        return self._run("chat", user_id, lambda uid: self._chat_turn(uid, message))

    def ingest_images(
        self,
        user_id: str,
        uploads: Sequence[ImageUpload],
        caption: str = "",
    ) -> OperationResult[IngestionResult]:
        return self._run("ingest_images", user_id, lambda uid: self._ingest(uid, list(uploads or []), caption))

    def regenerate_site(self, user_id: str) -> OperationResult[RegenerationResult]:
        return self._run("regenerate_site", user_id, self._regenerate)

    def reset(self, user_id: str) -> OperationResult[ResetResult]:
        return self._run("reset", user_id, self._reset)

    def snapshot(self, user_id: str) -> OperationResult[UserSnapshot]:
        return self._run("snapshot", user_id, self._snapshot)

    # ------------------------------------------------------------------
    # Boundary
    # ------------------------------------------------------------------
    def _run(self, operation: str, user_id: str, fn: Callable[[str], T]) -> OperationResult[T]:
        uid = user_id
        try:
            uid = validate_user_id(user_id)
            data = fn(uid)
        except MalformedResponseError as exc:
            LOG.warning(
                "malformed_model_response",
                extra={"operation": operation, "user_id": uid, "err": exc.message, "raw": _truncate(exc.raw_text)},
            )
            return self._failure(operation, exc)
        except DevBeaverError as exc:
            LOG.warning(
                "operation_failed",
                extra={"operation": operation, "user_id": uid, "kind": exc.kind, "err": exc.message},
            )
            return self._failure(operation, exc)
        except Exception as exc:
            LOG.exception("operation_crashed", extra={"operation": operation, "user_id": uid})
            return self._failure(operation, StorageError(f"Internal error: {exc}"))
        record_outcome(operation, "ok")
        return OperationResult(ok=True, data=data)

    @staticmethod
    def _failure(operation: str, exc: DevBeaverError) -> OperationResult:
        record_outcome(operation, exc.kind)
        return OperationResult(
            ok=False,
            error=OperationError(kind=exc.kind, message=exc.message, retryable=exc.retryable),
        )

    @staticmethod
    def _generate(call: Callable[[], str]) -> str:
        # Injected clients may raise anything; callers only see UpstreamError
        try:
            return call()
        except DevBeaverError:
            raise
        except Exception as exc:
            raise UpstreamError(f"Generation failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Conversational turn
    # ------------------------------------------------------------------
    def _chat_turn(self, user_id: str, message: str) -> ChatTurnResult:
        if not isinstance(message, str) or not message.strip():
            raise InputValidationError("Missing message")

        with self._sync.hold(user_id, ResourceKind.PROFILE_HISTORY):
            profile, history = self._store.load(user_id)
            working = history + [ConversationTurn(user=message)]
            messages = build_chat_messages(profile, working)
            raw = self._generate(lambda: self._generator.complete(messages, purpose="conversation"))
            question, delta = parse_chat_reply(raw)
            merged = merge_profile(profile, delta, raw_text=raw)
            committed = history + [ConversationTurn(user=message, bot=question)]
            self._store.save(user_id, merged, committed)

        LOG.info("chat_turn_committed", extra={"user_id": user_id, "turns": len(committed)})
        return ChatTurnResult(reply=question, history=committed, profile=merged)

    # ------------------------------------------------------------------
    # Media ingestion
    # ------------------------------------------------------------------
    def _ingest(self, user_id: str, uploads: List[ImageUpload], caption: str) -> IngestionResult:
        if not uploads:
            raise InputValidationError("No images uploaded")
        limit = max_images_per_upload()
        if len(uploads) > limit:
            raise InputValidationError(f"Too many images: {len(uploads)} (max {limit})")
        caption = (caption or "").strip()

        failures: List[ImageFailure] = []
        stored: List[Tuple[ImageUpload, str, str]] = []
        for upload in uploads:
            mime = _resolve_mime(upload)
            if not upload.data:
                failures.append(ImageFailure(original_name=upload.original_name, kind="validation", message="Empty file"))
                continue
            if not mime or not mime.startswith("image/"):
                failures.append(
                    ImageFailure(
                        original_name=upload.original_name,
                        kind="validation",
                        message=f"Unsupported content type: {mime or 'unknown'}",
                    )
                )
                continue
            try:
                stored_name = self._store.store_image(user_id, upload.original_name, upload.data)
            except StorageError as exc:
                failures.append(ImageFailure(original_name=upload.original_name, kind=exc.kind, message=exc.message))
                continue
            stored.append((upload, stored_name, mime))

        outcomes = self._analyze_images(user_id, stored)

        records: List[ImageRecord] = []
        for (upload, stored_name, mime), outcome in zip(stored, outcomes):
            if isinstance(outcome, DevBeaverError):
                failures.append(
                    ImageFailure(original_name=upload.original_name, kind=outcome.kind, message=outcome.message)
                )
                self._discard_image(user_id, stored_name)
                continue
            records.append(
                ImageRecord(
                    stored_name=stored_name,
                    original_name=upload.original_name,
                    url=f"{UPLOADS_DIR}/{stored_name}",
                    uploaded_at=_now_iso(),
                    caption=caption,
                    analysis=outcome,
                    mime_type=mime,
                )
            )

        if not records:
            LOG.info("image_ingestion_nothing_committed", extra={"user_id": user_id, "failed": len(failures)})
            return IngestionResult(images=[], failures=failures)

        try:
            with self._sync.hold(user_id, ResourceKind.PROFILE_HISTORY):
                # A reset during the analyses clears uploads under this same lock
                cleared = [r for r in records if not self._store.has_image(user_id, r.stored_name)]
                if cleared:
                    LOG.info("image_upload_cleared", extra={"user_id": user_id, "cleared": len(cleared)})
                    failures.extend(
                        ImageFailure(original_name=r.original_name, kind="storage", message="Upload cleared by reset")
                        for r in cleared
                    )
                    gone = {r.stored_name for r in cleared}
                    records = [r for r in records if r.stored_name not in gone]
                if not records:
                    return IngestionResult(images=[], failures=failures)

                # Re-read: a chat turn may have committed while the analyses ran
                profile, history = self._store.load(user_id)
                updated = profile.model_copy(update={"images": list(profile.images) + records})
                turn = ConversationTurn(
                    user=f'Uploaded {len(records)} image(s) with text: "{caption}"',
                    bot="\n\n".join(f"AI Analysis for {r.original_name}: {r.analysis}" for r in records),
                )
                self._store.save(user_id, updated, history + [turn])
        except DevBeaverError:
            for record in records:
                self._discard_image(user_id, record.stored_name)
            raise

        LOG.info(
            "images_ingested",
            extra={"user_id": user_id, "stored": len(records), "failed": len(failures)},
        )
        return IngestionResult(images=records, failures=failures)

    def _describe_image(self, data: bytes, mime: str) -> str:
        messages = build_image_messages()
        raw = self._generate(
            lambda: self._generator.complete_with_image(messages, data, mime, purpose="vision")
        )
        text = (raw or "").strip()
        if not text:
            raise MalformedResponseError("Empty image description", raw_text=raw)
        return text

    def _analyze_images(
        self,
        user_id: str,
        stored: List[Tuple[ImageUpload, str, str]],
    ) -> List[Union[str, DevBeaverError]]:
        if not stored:
            return []
        outcomes: List[Union[str, DevBeaverError]] = []
        workers = min(len(stored), self._image_workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="devbeaver-vision") as pool:
            futures = [pool.submit(self._describe_image, upload.data, mime) for upload, _, mime in stored]
            for (upload, _, _), future in zip(stored, futures):
                try:
                    outcomes.append(future.result())
                except DevBeaverError as exc:
                    LOG.warning(
                        "image_analysis_failed",
                        extra={
                            "user_id": user_id,
                            "original_name": upload.original_name,
                            "kind": exc.kind,
                            "err": exc.message,
                        },
                    )
                    outcomes.append(exc)
        return outcomes

    def _discard_image(self, user_id: str, stored_name: str) -> None:
        try:
            self._store.delete_image(user_id, stored_name)
        except StorageError as exc:
            LOG.warning(
                "image_cleanup_failed",
                extra={"user_id": user_id, "stored_name": stored_name, "err": exc.message},
            )

    # ------------------------------------------------------------------
    # Artifact regeneration
    # ------------------------------------------------------------------
    def _regenerate(self, user_id: str) -> RegenerationResult:
        with self._sync.hold(user_id, ResourceKind.ARTIFACT):
            profile, history = self._store.load(user_id)
            current = self._store.load_artifact(user_id)
            messages = build_site_messages(profile, history, current)
            raw = self._generate(lambda: self._generator.complete(messages, purpose="site_generation"))
            code = parse_site_update(raw)
            artifact = SiteArtifact(
                markup=code.markup,
                styling=code.styling,
                script=code.script,
                revision=current.revision + 1,
                generated_at=_now_iso(),
            )
            self._store.save_artifact(user_id, artifact)

        LOG.info("site_regenerated", extra={"user_id": user_id, "revision": artifact.revision})
        return RegenerationResult(artifact=artifact)

    # ------------------------------------------------------------------
    # Reset & snapshot
    # ------------------------------------------------------------------
    def _reset(self, user_id: str) -> ResetResult:
        # Fixed order: profile_history, then artifact
        with self._sync.hold(user_id, ResourceKind.PROFILE_HISTORY):
            with self._sync.hold(user_id, ResourceKind.ARTIFACT):
                self._store.reset(user_id)
        LOG.info("user_reset", extra={"user_id": user_id})
        return ResetResult(user_id=user_id, message="Your data has been reset. Let's start over!")

    def _snapshot(self, user_id: str) -> UserSnapshot:
        profile, history = self._store.load(user_id)
        return UserSnapshot(profile=profile, history=history, artifact=self._store.load_artifact(user_id))


_orchestrator: Optional[SiteOrchestrator] = None


def get_orchestrator() -> SiteOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = SiteOrchestrator(get_user_store(), get_generation_client())
    return _orchestrator
