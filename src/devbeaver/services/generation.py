from __future__ import annotations

import base64
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Dict, List, Optional, Protocol, Tuple

import requests
from langchain_openai import ChatOpenAI
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..config import env_float, env_int, llm_timeout_seconds
from ..domain.errors import UpstreamError
from .model_router import ModelRouter, ProviderSelection

LOG = logging.getLogger("devbeaver.llm")

Message = Dict[str, Any]

# Share of the hard timeout given to the transport, so a timed-out worker
# thread still finishes shortly after the caller gives up
_TRANSPORT_SHARE = 0.9
_LOCAL_RETRIES = 2


class GenerationClient(Protocol):
    def complete(self, messages: List[Message], *, purpose: str = "conversation") -> str: ...

    def complete_with_image(
        self,
        messages: List[Message],
        image_bytes: bytes,
        mime_type: str,
        *,
        purpose: str = "vision",
    ) -> str: ...


_BREAKER_LOCK = threading.Lock()
_BREAKER_STATE = {"fails": 0, "opened_at": 0.0}
_BREAKER_THRESHOLD = env_int("DEVBEAVER_LLM_BREAKER_THRESHOLD", 3)
_BREAKER_COOLDOWN = env_float("DEVBEAVER_LLM_BREAKER_COOLDOWN", 60.0)


def _breaker_open() -> bool:
    with _BREAKER_LOCK:
        opened = _BREAKER_STATE["opened_at"]
        if opened == 0.0:
            return False
        if time.time() - opened < _BREAKER_COOLDOWN:
            return True
        _BREAKER_STATE["fails"] = 0
        _BREAKER_STATE["opened_at"] = 0.0
        return False


def _record_fail() -> None:
    with _BREAKER_LOCK:
        _BREAKER_STATE["fails"] += 1
        if _BREAKER_STATE["fails"] >= _BREAKER_THRESHOLD and _BREAKER_STATE["opened_at"] == 0.0:
            _BREAKER_STATE["opened_at"] = time.time()
            LOG.warning(
                "llm_breaker_opened",
                extra={"fails": _BREAKER_STATE["fails"], "cooldown_s": _BREAKER_COOLDOWN},
            )


def _record_success() -> None:
    with _BREAKER_LOCK:
        if _BREAKER_STATE["fails"] or _BREAKER_STATE["opened_at"]:
            LOG.info("llm_breaker_closed")
        _BREAKER_STATE["fails"] = 0
        _BREAKER_STATE["opened_at"] = 0.0


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=_LOCAL_RETRIES,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["POST"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def image_message(prompt: str, image_bytes: bytes, mime_type: str) -> Message:
    """Build an OpenAI-style user message carrying text plus an inline image."""

    encoded = base64.b64encode(image_bytes).decode("ascii")
    return {
        "role": "user",
        "content": [
            {"type": "text", "text": prompt},
            {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}},
        ],
    }


def _coerce_text(res: Any) -> str:
    content = res.content if hasattr(res, "content") else res
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict):
                parts.append(str(item.get("text") or ""))
            else:
                parts.append(str(item))
        return "".join(parts)
    return "" if content is None else str(content)


class LocalLLMClient:
    """Client for a local OpenAI-compatible chat completions server."""

    def __init__(self, base_url: str, model: str, timeout: float = 60.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._timeout = (3, timeout)
        self._session = _build_session()

    def invoke(self, messages: List[Message]) -> str:
        LOG.debug("local_llm_invoke", extra={"model": self.model, "base_url": self.base_url})
        resp = self._session.post(
            f"{self.base_url}/v1/chat/completions",
            json={"model": self.model, "messages": messages, "stream": False},
            timeout=self._timeout,
        )
        resp.raise_for_status()
        data = resp.json()
        choices = data.get("choices") or []
        if choices:
            message = choices[0].get("message") or {}
            content = message.get("content")
            if content:
                return content
        return data.get("response") or data.get("text") or ""


class RoutedGenerationClient:
    """Process-wide generation client.

    Picks a provider per purpose through ``ModelRouter``, caches one LLM
    handle per (provider, model), and runs every call under a hard timeout.
    Any transport failure or timeout surfaces as ``UpstreamError``.
    """

    def __init__(
        self,
        router: Optional[ModelRouter] = None,
        timeout: Optional[float] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self._router = router or ModelRouter()
        self._timeout = timeout if timeout is not None else llm_timeout_seconds()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or env_int("DEVBEAVER_LLM_WORKERS", 8),
            thread_name_prefix="devbeaver-llm",
        )
        self._clients: Dict[Tuple[str, str], object] = {}
        self._clients_lock = threading.Lock()
        self._orphaned = 0
        self._orphaned_lock = threading.Lock()

    @property
    def transport_timeout(self) -> float:
        return self._timeout * _TRANSPORT_SHARE

    def complete(self, messages: List[Message], *, purpose: str = "conversation") -> str:
        return self._invoke(purpose, messages)

    def complete_with_image(
        self,
        messages: List[Message],
        image_bytes: bytes,
        mime_type: str,
        *,
        purpose: str = "vision",
    ) -> str:
        msgs = list(messages)
        prompt = ""
        if msgs and msgs[-1].get("role") == "user" and isinstance(msgs[-1].get("content"), str):
            prompt = msgs.pop()["content"]
        msgs.append(image_message(prompt, image_bytes, mime_type))
        return self._invoke(purpose, msgs)

    def _get_llm(self, purpose: str) -> Tuple[object, ProviderSelection]:
        try:
            selection = self._router.select_provider(purpose)
        except RuntimeError as exc:
            raise UpstreamError(str(exc)) from exc

        key = (selection.name, selection.model)
        with self._clients_lock:
            cached = self._clients.get(key)
            if cached is not None:
                return cached, selection

            base_url = selection.default_base_url
            if selection.base_url_env:
                base_url = self._router.env.get(selection.base_url_env, base_url or "")

            if selection.name == "local":
                LOG.info(
                    "llm_provider_selected",
                    extra={"provider": "local", "model": selection.model, "base_url": base_url},
                )
                client: object = LocalLLMClient(
                    base_url=base_url or "",
                    model=selection.model,
                    timeout=self.transport_timeout / (_LOCAL_RETRIES + 1),
                )
            else:
                api_key = self._router.env.get(selection.api_key_env) if selection.api_key_env else None
                if selection.requires_api_key and not api_key:
                    raise UpstreamError("LLM not configured")
                LOG.info(
                    "llm_provider_selected",
                    extra={"provider": selection.name, "model": selection.model, "base_url": base_url},
                )
                client = ChatOpenAI(
                    api_key=api_key,
                    base_url=base_url,
                    model=selection.model,
                    temperature=0.2,
                    timeout=self.transport_timeout,
                    max_retries=0,
                )
            self._clients[key] = client
            return client, selection

    def _invoke(self, purpose: str, messages: List[Message]) -> str:
        if _breaker_open():
            LOG.info("llm_skipped_due_to_breaker", extra={"purpose": purpose, "cooldown_s": _BREAKER_COOLDOWN})
            raise UpstreamError("Generation service temporarily unavailable (circuit open)")

        llm, selection = self._get_llm(purpose)
        started = time.perf_counter()
        future = self._executor.submit(llm.invoke, messages)  # type: ignore[attr-defined]
        try:
            res = future.result(timeout=self._timeout)
        except FutureTimeout as exc:
            _record_fail()
            if not future.cancel():
                self._track_orphan(future, purpose)
            LOG.warning(
                "llm_timeout",
                extra={"purpose": purpose, "provider": selection.name, "timeout_s": self._timeout},
            )
            raise UpstreamError(f"Generation timed out after {self._timeout:.0f}s") from exc
        except Exception as exc:
            _record_fail()
            LOG.warning(
                "llm_call_failed",
                extra={"purpose": purpose, "provider": selection.name, "err": str(exc)},
            )
            raise UpstreamError(f"Generation failed: {exc}") from exc

        _record_success()
        LOG.debug(
            "llm_call_succeeded",
            extra={
                "purpose": purpose,
                "provider": selection.name,
                "model": selection.model,
                "elapsed_s": time.perf_counter() - started,
            },
        )
        return _coerce_text(res)

    def _track_orphan(self, future, purpose: str) -> None:
        with self._orphaned_lock:
            self._orphaned += 1
            orphaned = self._orphaned
        LOG.warning("llm_worker_orphaned", extra={"purpose": purpose, "orphaned": orphaned})
        future.add_done_callback(lambda _f: self._release_orphan())

    def _release_orphan(self) -> None:
        with self._orphaned_lock:
            self._orphaned -= 1

    @property
    def orphaned_workers(self) -> int:
        with self._orphaned_lock:
            return self._orphaned


_client: Optional[RoutedGenerationClient] = None


def get_generation_client() -> RoutedGenerationClient:
    global _client
    if _client is None:
        _client = RoutedGenerationClient()
    return _client
