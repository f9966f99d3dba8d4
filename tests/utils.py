from __future__ import annotations

import json
import threading
from typing import Any, Dict, List, Optional, Tuple


def _resolve(value: Any, *args: Any) -> str:
    if isinstance(value, BaseException):
        raise value
    if callable(value):
        return value(*args)
    return value


class StubGenerationClient:
    """Deterministic stand-in for the generation service.

    ``reply`` answers text completions and ``vision`` answers image calls. Each
    may be a string, an exception instance (raised), or a callable.
    """

    def __init__(self, reply: Any = None, vision: Any = "A photo.") -> None:
        self.reply = reply
        self.vision = vision
        self.calls: List[Tuple[str, List[Dict[str, Any]]]] = []
        self._lock = threading.Lock()

    def complete(self, messages, *, purpose: str = "conversation") -> str:
        with self._lock:
            self.calls.append((purpose, messages))
        return _resolve(self.reply, messages, purpose)

    def complete_with_image(self, messages, image_bytes, mime_type, *, purpose: str = "vision") -> str:
        with self._lock:
            self.calls.append((purpose, messages))
        return _resolve(self.vision, image_bytes)

    def purposes(self) -> List[str]:
        with self._lock:
            return [p for p, _ in self.calls]


def chat_reply(question: str, profile: Optional[Dict[str, Any]] = None) -> str:
    return json.dumps({"nextQuestion": question, "updatedUserProfile": profile or {}})


def site_reply(html: str = "<h1>Hi</h1>", css: str = "h1{}", js: str = "show('home');", **extra: Any) -> str:
    payload: Dict[str, Any] = {"updatedCode": {"html": html, "css": css, "js": js}}
    payload.update(extra)
    return json.dumps(payload)


PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
