from __future__ import annotations

import threading
import time

from src.devbeaver.domain.errors import UpstreamError
from src.devbeaver.domain.site_models import (
    ConversationTurn,
    ImageUpload,
    ResourceKind,
    SiteArtifact,
    SiteProfile,
)
from src.devbeaver.infrastructure.locks import StateSynchronizer
from tests.utils import PNG_BYTES, StubGenerationClient, chat_reply, site_reply


def _png(name: str) -> ImageUpload:
    return ImageUpload(original_name=name, data=PNG_BYTES, mime_type="image/png")


# ---------------------------------------------------------------------------
# Conversational turn
# ---------------------------------------------------------------------------


def test_chat_turn_records_reply_and_merges_profile(make_orchestrator, store):
    client = StubGenerationClient(
        reply='{"nextQuestion":"What colors?","updatedUserProfile":{"websiteType":"bakery","images":[]}}'
    )
    orch = make_orchestrator(client)

    result = orch.chat("u1", "I want a bakery site")

    assert result.ok, result.error
    assert result.data.reply == "What colors?"
    profile, history = store.load("u1")
    assert history == [ConversationTurn(user="I want a bakery site", bot="What colors?")]
    assert profile.website_type == "bakery"
    assert profile.images == []
    assert client.purposes() == ["conversation"]


def test_chat_prompt_includes_pending_user_message(make_orchestrator):
    client = StubGenerationClient(reply=chat_reply("Next?"))
    orch = make_orchestrator(client)
    orch.chat("u1", "first")
    orch.chat("u1", "second")

    _, messages = client.calls[-1]
    content = messages[0]["content"]
    assert "User: first\nBot: Next?\nUser: second" in content
    assert "Bot: Next?\nUser: second\nBot" not in content


def test_malformed_chat_response_leaves_state_unchanged(make_orchestrator, store):
    client = StubGenerationClient(reply=chat_reply("What colors?", {"websiteType": "bakery"}))
    orch = make_orchestrator(client)
    assert orch.chat("u1", "hello").ok
    before = store.load("u1")

    client.reply = "Sorry, I cannot answer in JSON today."
    result = orch.chat("u1", "blue please")

    assert not result.ok
    assert result.error.kind == "malformed_response"
    assert result.error.retryable is True
    assert store.load("u1") == before


def test_chat_rejects_bad_profile_types_without_partial_merge(make_orchestrator, store):
    client = StubGenerationClient(reply=chat_reply("Q?", {"websiteType": "bakery", "pages": "home"}))
    orch = make_orchestrator(client)
    result = orch.chat("u1", "hi")
    assert result.error.kind == "malformed_response"
    profile, history = store.load("u1")
    assert profile == SiteProfile()
    assert history == []


def test_chat_upstream_failure_is_reported_and_nothing_persisted(make_orchestrator, store):
    orch = make_orchestrator(StubGenerationClient(reply=UpstreamError("service down")))
    result = orch.chat("u1", "hi")
    assert result.error.kind == "upstream"
    assert result.error.message == "service down"
    assert not (store.root / "u1").exists()


def test_unexpected_client_exception_maps_to_upstream(make_orchestrator):
    orch = make_orchestrator(StubGenerationClient(reply=RuntimeError("socket closed")))
    result = orch.chat("u1", "hi")
    assert result.error.kind == "upstream"
    assert "socket closed" in result.error.message


def test_invalid_input_is_rejected_before_state_access(make_orchestrator, store):
    client = StubGenerationClient(reply=chat_reply("Q?"))
    orch = make_orchestrator(client)

    bad_user = orch.chat("../escape", "hi")
    assert bad_user.error.kind == "validation"
    assert bad_user.error.retryable is False

    blank = orch.chat("u1", "   ")
    assert blank.error.kind == "validation"
    assert client.calls == []
    assert list(store.root.iterdir()) == []


def test_chat_lock_timeout_is_distinct_failure(make_orchestrator, store):
    sync = StateSynchronizer(store.root, timeout=0.1, cross_process=False)
    client = StubGenerationClient(reply=chat_reply("Q?"))
    orch = make_orchestrator(client, sync)
    with sync.hold("u1", ResourceKind.PROFILE_HISTORY):
        result = orch.chat("u1", "hi")
    assert result.error.kind == "lock_timeout"
    assert result.error.retryable is True
    assert client.calls == []


# ---------------------------------------------------------------------------
# Media ingestion
# ---------------------------------------------------------------------------


def test_ingest_with_one_failed_analysis(make_orchestrator, store):
    def vision(data: bytes) -> str:
        if data.endswith(b"bad"):
            raise UpstreamError("vision down")
        return "A cake."

    orch = make_orchestrator(StubGenerationClient(vision=vision))
    uploads = [
        _png("a.png"),
        ImageUpload(original_name="b.png", data=PNG_BYTES + b"bad", mime_type="image/png"),
        _png("c.png"),
    ]

    result = orch.ingest_images("u1", uploads, caption="menu photos")

    assert result.ok, result.error
    assert [r.original_name for r in result.data.images] == ["a.png", "c.png"]
    assert len(result.data.failures) == 1
    failure = result.data.failures[0]
    assert (failure.original_name, failure.kind) == ("b.png", "upstream")

    profile, history = store.load("u1")
    assert len(profile.images) == 2
    assert all(r.caption == "menu photos" and r.analysis == "A cake." for r in profile.images)
    assert all(r.url == f"uploads/{r.stored_name}" for r in profile.images)
    # Failed binary is not left behind
    assert sorted(store.list_images("u1")) == sorted(r.stored_name for r in profile.images)

    assert len(history) == 1
    assert history[0].user == 'Uploaded 2 image(s) with text: "menu photos"'
    assert history[0].bot == "AI Analysis for a.png: A cake.\n\nAI Analysis for c.png: A cake."


def test_ingest_rejects_non_images_per_file(make_orchestrator, store):
    orch = make_orchestrator(StubGenerationClient())
    uploads = [
        _png("ok.png"),
        ImageUpload(original_name="notes.txt", data=b"hello", mime_type="text/plain"),
        ImageUpload(original_name="empty.png", data=b"", mime_type="image/png"),
    ]
    result = orch.ingest_images("u1", uploads)
    assert [r.original_name for r in result.data.images] == ["ok.png"]
    assert {(f.original_name, f.kind) for f in result.data.failures} == {
        ("notes.txt", "validation"),
        ("empty.png", "validation"),
    }
    assert len(store.list_images("u1")) == 1


def test_ingest_guesses_mime_from_name(make_orchestrator):
    orch = make_orchestrator(StubGenerationClient())
    upload = ImageUpload(original_name="photo.jpg", data=b"jpeg", mime_type="application/octet-stream")
    result = orch.ingest_images("u1", [upload])
    assert result.data.images[0].mime_type == "image/jpeg"


def test_ingest_with_all_failures_commits_nothing(make_orchestrator, store):
    orch = make_orchestrator(StubGenerationClient(vision=UpstreamError("down")))
    result = orch.ingest_images("u1", [_png("a.png"), _png("b.png")])
    assert result.ok
    assert result.data.images == []
    assert len(result.data.failures) == 2
    profile, history = store.load("u1")
    assert profile.images == [] and history == []
    assert store.list_images("u1") == []


def test_ingest_empty_vision_reply_is_malformed(make_orchestrator):
    orch = make_orchestrator(StubGenerationClient(vision="   "))
    result = orch.ingest_images("u1", [_png("a.png")])
    assert result.data.failures[0].kind == "malformed_response"


def test_ingest_validates_batch(make_orchestrator, monkeypatch):
    orch = make_orchestrator(StubGenerationClient())
    assert orch.ingest_images("u1", []).error.kind == "validation"

    monkeypatch.setenv("DEVBEAVER_MAX_IMAGES_PER_UPLOAD", "2")
    result = orch.ingest_images("u1", [_png("a.png"), _png("b.png"), _png("c.png")])
    assert result.error.kind == "validation"


def test_ingest_commit_failure_removes_stored_binaries(make_orchestrator, store, monkeypatch):
    from src.devbeaver.domain.errors import StorageError

    orch = make_orchestrator(StubGenerationClient())

    def failing_save(*_args, **_kwargs):
        raise StorageError("disk full")

    monkeypatch.setattr(store, "save", failing_save)
    result = orch.ingest_images("u1", [_png("a.png")])
    assert result.error.kind == "storage"
    assert store.list_images("u1") == []


def test_ingest_analyses_run_concurrently(make_orchestrator):
    barrier = threading.Barrier(3, timeout=2)

    def vision(_data: bytes) -> str:
        # Deadlocks (and times out) unless all three calls are in flight together
        barrier.wait()
        return "ok"

    orch = make_orchestrator(StubGenerationClient(vision=vision))
    result = orch.ingest_images("u1", [_png("a.png"), _png("b.png"), _png("c.png")])
    assert len(result.data.images) == 3


# ---------------------------------------------------------------------------
# Interleaving
# ---------------------------------------------------------------------------


def test_chat_and_ingestion_both_survive_when_ingestion_waits_for_chat(make_orchestrator, store):
    chat_in_flight = threading.Event()
    release_chat = threading.Event()
    vision_done = threading.Event()

    def reply(_messages, _purpose):
        chat_in_flight.set()
        release_chat.wait(5)
        return chat_reply("What colors?", {"websiteType": "bakery"})

    def vision(_data):
        vision_done.set()
        return "A cake."

    orch = make_orchestrator(StubGenerationClient(reply=reply, vision=vision))
    results = {}
    t_chat = threading.Thread(target=lambda: results.setdefault("chat", orch.chat("u1", "bakery")))
    t_chat.start()
    assert chat_in_flight.wait(2)

    t_ingest = threading.Thread(target=lambda: results.setdefault("ingest", orch.ingest_images("u1", [_png("a.png")])))
    t_ingest.start()
    assert vision_done.wait(2)
    release_chat.set()
    t_chat.join(5)
    t_ingest.join(5)

    assert results["chat"].ok and results["ingest"].ok
    profile, history = store.load("u1")
    assert profile.website_type == "bakery"
    assert len(profile.images) == 1
    assert [t.user for t in history] == ["bakery", 'Uploaded 1 image(s) with text: ""']


def test_chat_committed_during_image_analysis_is_not_lost(make_orchestrator, store):
    analysis_started = threading.Event()
    release_analysis = threading.Event()

    def vision(_data):
        analysis_started.set()
        release_analysis.wait(5)
        return "A cake."

    orch = make_orchestrator(
        StubGenerationClient(reply=chat_reply("What colors?", {"websiteType": "bakery"}), vision=vision)
    )
    results = {}
    t_ingest = threading.Thread(target=lambda: results.setdefault("ingest", orch.ingest_images("u1", [_png("a.png")])))
    t_ingest.start()
    assert analysis_started.wait(2)

    # Analysis holds no lock, so the chat turn commits right away
    assert orch.chat("u1", "bakery").ok
    release_analysis.set()
    t_ingest.join(5)

    assert results["ingest"].ok
    profile, history = store.load("u1")
    assert profile.website_type == "bakery"
    assert len(profile.images) == 1
    assert [t.user for t in history] == ["bakery", 'Uploaded 1 image(s) with text: ""']


# ---------------------------------------------------------------------------
# Regeneration
# ---------------------------------------------------------------------------


def test_regeneration_is_deterministic_with_deterministic_model(make_orchestrator, store):
    orch = make_orchestrator(StubGenerationClient(reply=site_reply("<h1>Cakes</h1>", "h1{}", "show()")))

    first = orch.regenerate_site("u1")
    second = orch.regenerate_site("u1")

    assert first.ok and second.ok
    a, b = first.data.artifact, second.data.artifact
    assert (a.markup, a.styling, a.script) == (b.markup, b.styling, b.script) == ("<h1>Cakes</h1>", "h1{}", "show()")
    assert (a.revision, b.revision) == (1, 2)
    assert b.generated_at is not None
    assert store.load_artifact("u1") == b


def test_regeneration_prompt_uses_profile_history_images_and_current_code(make_orchestrator, store):
    client = StubGenerationClient(reply=site_reply())
    orch = make_orchestrator(client)
    orch.ingest_images("u1", [_png("logo.png")], caption="logo")
    store.save_artifact("u1", SiteArtifact(markup="<h1>Old</h1>", revision=1))

    assert orch.regenerate_site("u1").ok
    purpose, messages = client.calls[-1]
    assert purpose == "site_generation"
    content = messages[0]["content"]
    stored_name = store.list_images("u1")[0]
    assert f"uploads/{stored_name}" in content
    assert "HTML: <h1>Old</h1>" in content
    assert "Uploaded 1 image(s)" in content


def test_regeneration_failure_leaves_artifact_untouched(make_orchestrator, store):
    store.save_artifact("u1", SiteArtifact(markup="<p>keep</p>", revision=4))
    orch = make_orchestrator(StubGenerationClient(reply='{"updatedCode": {"html": "<p/>"}}'))
    result = orch.regenerate_site("u1")
    assert result.error.kind == "malformed_response"
    assert store.load_artifact("u1") == SiteArtifact(markup="<p>keep</p>", revision=4)


def test_regeneration_does_not_touch_profile(make_orchestrator, store):
    store.save("u1", SiteProfile(website_type="bakery"), [ConversationTurn(user="a", bot="b")])
    orch = make_orchestrator(
        StubGenerationClient(reply=site_reply(updatedUserProfile={"websiteType": "garage"}))
    )
    assert orch.regenerate_site("u1").ok
    profile, history = store.load("u1")
    assert profile.website_type == "bakery"
    assert len(history) == 1


# ---------------------------------------------------------------------------
# Reset & snapshot
# ---------------------------------------------------------------------------


def test_reset_restores_defaults(make_orchestrator, store):
    client = StubGenerationClient(reply=chat_reply("Q?", {"websiteType": "bakery"}))
    orch = make_orchestrator(client)
    orch.chat("u1", "hi")
    orch.ingest_images("u1", [_png("a.png")])
    client.reply = site_reply()
    orch.regenerate_site("u1")

    result = orch.reset("u1")

    assert result.ok
    assert result.data.user_id == "u1"
    profile, history = store.load("u1")
    assert profile == SiteProfile()
    assert history == []
    assert store.load_artifact("u1") == SiteArtifact()
    assert store.list_images("u1") == []


def test_reset_waits_for_in_flight_regeneration(make_orchestrator, store):
    in_flight = threading.Event()
    release = threading.Event()

    def reply(_messages, _purpose):
        in_flight.set()
        release.wait(5)
        return site_reply("<h1>New</h1>")

    orch = make_orchestrator(StubGenerationClient(reply=reply))
    results = {}
    t_regen = threading.Thread(target=lambda: results.setdefault("regen", orch.regenerate_site("u1")))
    t_regen.start()
    assert in_flight.wait(2)

    t_reset = threading.Thread(target=lambda: results.setdefault("reset", orch.reset("u1")))
    t_reset.start()
    time.sleep(0.1)
    assert t_reset.is_alive()
    assert "reset" not in results

    release.set()
    t_regen.join(5)
    t_reset.join(5)

    assert results["regen"].ok and results["reset"].ok
    # Reset ran after the regeneration committed
    assert store.load_artifact("u1") == SiteArtifact()


def test_reset_during_image_analysis_drops_cleared_uploads(make_orchestrator, store):
    in_flight = threading.Event()
    release = threading.Event()

    def vision(_data):
        in_flight.set()
        release.wait(5)
        return "A logo."

    orch = make_orchestrator(StubGenerationClient(vision=vision))
    results = {}
    t_ingest = threading.Thread(target=lambda: results.setdefault("ingest", orch.ingest_images("u1", [_png("a.png")])))
    t_ingest.start()
    assert in_flight.wait(2)
    assert len(store.list_images("u1")) == 1

    # Analysis holds no lock, so the reset goes straight through
    reset = orch.reset("u1")
    assert reset.ok
    assert store.list_images("u1") == []

    release.set()
    t_ingest.join(5)

    result = results["ingest"]
    assert result.ok
    assert result.data.images == []
    assert [(f.original_name, f.kind, f.message) for f in result.data.failures] == [
        ("a.png", "storage", "Upload cleared by reset")
    ]
    profile, history = store.load("u1")
    assert profile.images == []
    assert history == []
    referenced = {img.stored_name for img in profile.images}
    assert referenced <= set(store.list_images("u1"))


def test_snapshot_returns_current_state(make_orchestrator):
    orch = make_orchestrator(StubGenerationClient(reply=chat_reply("Q?", {"websiteType": "bakery"})))
    orch.chat("u1", "hi")
    snap = orch.snapshot("u1")
    assert snap.ok
    assert snap.data.profile.website_type == "bakery"
    assert snap.data.history[0].bot == "Q?"
    assert snap.data.artifact.revision == 0
