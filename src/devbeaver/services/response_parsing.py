"""Validation and merge rules for model output.

Model text is untrusted: it is parsed into a JSON object, checked against the
expected shape, and rejected as a whole on any violation. Nothing is partially
merged.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictStr, ValidationError, field_validator

from ..domain.errors import MalformedResponseError
from ..domain.site_models import SiteProfile

LOG = logging.getLogger("devbeaver.orchestrator")

# Keys owned by the store; model echoes are discarded
_STORE_OWNED_PROFILE_KEYS = {"images"}


def strip_code_fences(text: Optional[str]) -> str:
    text = (text or "").strip()
    if text.startswith("```"):
        lines = text.splitlines()
        if lines and lines[0].startswith("```"):
            lines = lines[1:]
        while lines and lines[-1].strip().startswith("```"):
            lines = lines[:-1]
        text = "\n".join(lines).strip()
    return text


def parse_json_object(raw: Optional[str]) -> Dict[str, Any]:
    candidate = strip_code_fences(raw)
    if not candidate:
        raise MalformedResponseError("Empty response from generation service", raw_text=raw)
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        # Models sometimes wrap the object in prose
        m = re.search(r"\{[\s\S]*\}", candidate)
        if not m:
            raise MalformedResponseError("Response is not JSON", raw_text=raw)
        try:
            data = json.loads(m.group(0))
        except json.JSONDecodeError as exc:
            raise MalformedResponseError(f"Response is not valid JSON: {exc.msg}", raw_text=raw) from exc
    if not isinstance(data, dict):
        raise MalformedResponseError("Response JSON is not an object", raw_text=raw)
    return data


# ---------------------------------------------------------------------------
# Conversational turn
# ---------------------------------------------------------------------------


def parse_chat_reply(raw: Optional[str]) -> Tuple[str, Dict[str, Any]]:
    """Return ``(next_question, profile_delta)`` from a chat turn response."""

    data = parse_json_object(raw)
    question = data.get("nextQuestion")
    if not isinstance(question, str) or not question.strip():
        raise MalformedResponseError("Missing or empty 'nextQuestion'", raw_text=raw)
    delta = data.get("updatedUserProfile")
    if not isinstance(delta, dict):
        raise MalformedResponseError("Missing or invalid 'updatedUserProfile'", raw_text=raw)
    return question.strip(), delta


def _known_profile_keys() -> Dict[str, str]:
    """Map field name and alias to the persisted (camelCase) key."""

    keys: Dict[str, str] = {}
    for name, info in SiteProfile.model_fields.items():
        alias = info.alias or name
        keys[name] = alias
        keys[alias] = alias
    return keys


def merge_profile(previous: SiteProfile, delta: Dict[str, Any], raw_text: Optional[str] = None) -> SiteProfile:
    """Overlay a model-produced profile onto the stored one.

    Known fields that are absent or null keep their stored value, unknown
    fields pass through, and the stored image list always wins.
    """

    cleaned = {
        k: v
        for k, v in delta.items()
        if v is not None and k not in _STORE_OWNED_PROFILE_KEYS
    }
    try:
        validated = SiteProfile.model_validate(cleaned)
    except ValidationError as exc:
        raise MalformedResponseError(
            f"'updatedUserProfile' has invalid fields: {exc.error_count()} error(s)",
            raw_text=raw_text,
        ) from exc

    dumped = validated.model_dump(mode="json", by_alias=True)
    known = _known_profile_keys()
    merged = previous.to_document()
    for key, value in cleaned.items():
        target = known.get(key)
        if target is None:
            merged[key] = value
        elif target not in _STORE_OWNED_PROFILE_KEYS:
            merged[target] = dumped[target]
    merged["images"] = previous.to_document()["images"]
    return SiteProfile.model_validate(merged)


# ---------------------------------------------------------------------------
# Artifact regeneration
# ---------------------------------------------------------------------------


class GeneratedCode(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    markup: StrictStr = Field(validation_alias=AliasChoices("html", "markup"))
    styling: StrictStr = Field(validation_alias=AliasChoices("css", "styling"))
    script: StrictStr = Field(validation_alias=AliasChoices("js", "script"))

    @field_validator("markup")
    @classmethod
    def _markup_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("markup is empty")
        return value


def parse_site_update(raw: Optional[str]) -> GeneratedCode:
    data = parse_json_object(raw)
    code = data.get("updatedCode")
    if not isinstance(code, dict):
        raise MalformedResponseError("Missing or invalid 'updatedCode'", raw_text=raw)
    try:
        parsed = GeneratedCode.model_validate(code)
    except ValidationError as exc:
        raise MalformedResponseError(
            f"'updatedCode' must hold string html, css and js: {exc.error_count()} error(s)",
            raw_text=raw,
        ) from exc
    if "updatedUserProfile" in data:
        # Regeneration never writes the profile
        LOG.info("site_update_profile_ignored")
    return parsed
