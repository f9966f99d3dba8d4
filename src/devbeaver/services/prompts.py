from __future__ import annotations

import json
import textwrap
from typing import Any, Dict, List

from ..domain.site_models import ConversationTurn, SiteArtifact, SiteProfile


IMAGE_SYSTEM_PROMPT = "You are a helpful assistant that describes images."
IMAGE_USER_PROMPT = "What kind of image is this and what is its use?"


def render_history(history: List[ConversationTurn]) -> str:
    """Render turns as ``User:``/``Bot:`` lines; a pending turn has no ``Bot:`` line."""

    lines: List[str] = []
    for turn in history:
        lines.append(f"User: {turn.user}")
        if not turn.is_pending:
            lines.append(f"Bot: {turn.bot}")
    return "\n".join(lines)


def _profile_json(profile: SiteProfile) -> str:
    return json.dumps(profile.to_document(), indent=2, ensure_ascii=False)


def build_chat_messages(profile: SiteProfile, history: List[ConversationTurn]) -> List[Dict[str, Any]]:
    prompt = textwrap.dedent(
        """
        You are a helpful assistant that talks to users to understand and build their ideal website.
        Ask one clear question at a time and fold everything the user has told you into the profile.

        Here is the existing chat history:
        {history}

        Here is the current user profile:
        {profile}

        Respond ONLY in this JSON format:
        {{ "nextQuestion": "string", "updatedUserProfile": {{ ... }} }}
        "updatedUserProfile" must be the complete profile, keeping every existing field.
        """
    ).strip()
    return [
        {
            "role": "system",
            "content": prompt.format(history=render_history(history), profile=_profile_json(profile)),
        }
    ]


def build_image_messages() -> List[Dict[str, Any]]:
    return [
        {"role": "system", "content": IMAGE_SYSTEM_PROMPT},
        {"role": "user", "content": IMAGE_USER_PROMPT},
    ]


def build_site_messages(
    profile: SiteProfile,
    history: List[ConversationTurn],
    artifact: SiteArtifact,
) -> List[Dict[str, Any]]:
    image_lines = [
        f"- {img.url} ({img.original_name}): {img.caption or 'no caption'}. {img.analysis}".strip()
        for img in profile.images
    ]
    history_doc = json.dumps([t.model_dump() for t in history], indent=2, ensure_ascii=False)
    prompt = textwrap.dedent(
        """
        You are a full-stack web developer. Build a dynamic multi-page website using exactly one HTML file,
        one CSS file and one JavaScript file.

        Requirements:
        - index.html holds every page as a <section>; only one section is visible at a time.
        - script.js implements navigation by toggling sections (no additional HTML documents, no page reloads).
        - index.html links styles.css and script.js with relative paths.
        - Use the uploaded images where they fit, referencing them by the relative URLs listed below.
        - Apply every requirement from the user profile and the conversation. Keep working parts of the
          current code and change what the conversation asks for.

        User profile:
        {profile}

        Conversation history:
        {history}

        Uploaded images:
        {images}

        Here is the current website code:
        HTML: {html}
        CSS: {css}
        JS: {js}

        Respond ONLY in this JSON format:
        {{
          "updatedCode": {{
            "html": "string",
            "css": "string",
            "js": "string"
          }}
        }}
        Escape newlines using \\n so the JSON parses cleanly.
        """
    ).strip()
    content = prompt.format(
        profile=_profile_json(profile),
        history=history_doc,
        images="\n".join(image_lines) or "(none)",
        html=artifact.markup,
        css=artifact.styling,
        js=artifact.script,
    )
    return [{"role": "system", "content": content}]
