import asyncio
import json
import sqlite3

from bitbucket_events import (
    COMMIT_STATUS_CREATED,
    COMMIT_STATUS_UPDATED,
    PR_APPROVED,
    PR_COMMENT_CREATED,
    PR_CREATED,
    PR_FULFILLED,
    PR_REJECTED,
    PR_UNAPPROVED,
    PR_UPDATED,
    sign,
)
from conftest import FakeSink
from models import PR_MERGED, BuildState
from payloads import REPO, commit_status_payload, pr_payload
from pr_handler import PRHandler


def _only_post(relay):
    assert len(relay.sink.posts) == 1
    channel_id, message_id, _ = relay.sink.posts[0]
    return channel_id, message_id


# ---------------------------------------------------------------------------
# End-to-end
# ---------------------------------------------------------------------------


def test_created_then_approved_edits_card_and_threads_reply(relay, store):
    secret = store.subscribe("C1", REPO)

    result = relay.deliver(PR_CREATED, pr_payload(pr_id=7, author="carol"), secret=secret)

    assert result.accepted
    channel_id, message_id = _only_post(relay)
    assert channel_id == "C1"
    assert relay.sink.field(message_id, "Author") == "*carol*"
    assert relay.sink.field(message_id, "Reviewers") == "—"

    relay.deliver(PR_APPROVED, pr_payload(pr_id=7, author="carol", actor="alice"), secret=secret)

    assert len(relay.sink.posts) == 1
    assert relay.sink.field(message_id, "Status") == "✅ Approved by *alice*"
    assert relay.sink.replies == [("C1", message_id, "✅ *alice* approved this PR")]


def test_created_with_no_subscribers_posts_nothing_but_saves_card(relay, store):
    result = relay.deliver(PR_CREATED, pr_payload(pr_id=3))

    assert result.accepted
    assert relay.sink.posts == []
    assert store.get_message_pointers(REPO, 3) == []
    assert store.get_card(REPO, 3).title == "Add widget cache"


def test_created_posts_once_per_subscribed_channel(relay, store):
    store.subscribe("C1", REPO)
    secret = store.subscribe("C2", REPO)

    relay.deliver(PR_CREATED, pr_payload(reviewers=("alice", "bob")), secret=secret)

    assert [post[0] for post in relay.sink.posts] == ["C1", "C2"]
    assert {p.channel_id for p in store.get_message_pointers(REPO, 7)} == {"C1", "C2"}
    message_id = relay.sink.posts[0][1]
    assert relay.sink.field(message_id, "Reviewers") == "*alice*, *bob*"


def test_replayed_created_event_keeps_a_single_pointer(relay, store):
    secret = store.subscribe("C1", REPO)

    relay.deliver(PR_CREATED, pr_payload(), secret=secret)
    relay.deliver(PR_CREATED, pr_payload(), secret=secret)

    assert len(relay.sink.posts) == 1
    assert len(relay.sink.updates) == 1
    pointers = store.get_message_pointers(REPO, 7)
    assert len(pointers) == 1
    assert pointers[0].message_id == relay.sink.posts[0][1]


def test_linked_identities_render_as_mentions(relay, store):
    secret = store.subscribe("C1", REPO)
    store.save_user_mapping("4242", "carol")

    relay.deliver(PR_CREATED, pr_payload(author="carol", reviewers=("carol", "bob")), secret=secret)

    _, message_id = _only_post(relay)
    assert relay.sink.field(message_id, "Author") == "<@4242>"
    assert relay.sink.field(message_id, "Reviewers") == "<@4242>, *bob*"


# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------


def test_approving_twice_is_the_same_as_once(relay, store):
    secret = store.subscribe("C1", REPO)
    relay.deliver(PR_CREATED, pr_payload(), secret=secret)

    relay.deliver(PR_APPROVED, pr_payload(actor="alice"), secret=secret)
    relay.deliver(PR_APPROVED, pr_payload(actor="alice"), secret=secret)

    _, message_id, _ = relay.sink.posts[0]
    assert store.get_approvals(REPO, 7) == ["alice"]
    assert relay.sink.field(message_id, "Status") == "✅ Approved by *alice*"


def test_approvers_listed_in_approval_order(relay, store):
    secret = store.subscribe("C1", REPO)
    relay.deliver(PR_CREATED, pr_payload(), secret=secret)

    relay.deliver(PR_APPROVED, pr_payload(actor="bob"), secret=secret)
    relay.deliver(PR_APPROVED, pr_payload(actor="alice"), secret=secret)

    _, message_id, _ = relay.sink.posts[0]
    assert relay.sink.field(message_id, "Status") == "✅ Approved by *bob*, *alice*"


def test_unapproved_removes_approver_and_threads_reply(relay, store):
    secret = store.subscribe("C1", REPO)
    relay.deliver(PR_CREATED, pr_payload(), secret=secret)
    relay.deliver(PR_APPROVED, pr_payload(actor="alice"), secret=secret)

    relay.deliver(PR_UNAPPROVED, pr_payload(actor="alice"), secret=secret)

    _, message_id, _ = relay.sink.posts[0]
    content = relay.sink.messages[message_id][1]
    assert all(f["name"] != "Status" for f in content["fields"])
    assert relay.sink.replies[-1] == ("C1", message_id, "↩️ *alice* removed their approval")


def test_unapproving_a_non_member_is_a_no_op(relay, store):
    secret = store.subscribe("C1", REPO)
    relay.deliver(PR_CREATED, pr_payload(), secret=secret)
    relay.deliver(PR_APPROVED, pr_payload(actor="alice"), secret=secret)

    relay.deliver(PR_UNAPPROVED, pr_payload(actor="bob"), secret=secret)

    assert store.get_approvals(REPO, 7) == ["alice"]


# ---------------------------------------------------------------------------
# Merge / decline
# ---------------------------------------------------------------------------


def test_merged_edits_card_and_threads_status(relay, store):
    secret = store.subscribe("C1", REPO)
    relay.deliver(PR_CREATED, pr_payload(), secret=secret)

    relay.deliver(PR_FULFILLED, pr_payload(actor="dave"), secret=secret)

    _, message_id = _only_post(relay)
    assert relay.sink.field(message_id, "Status") == "🎉 Merged by *dave*"
    assert relay.sink.replies == [("C1", message_id, "🎉 Merged by *dave*")]
    assert store.get_card(REPO, 7).state == PR_MERGED


def test_declined_edits_card_and_threads_status(relay, store):
    secret = store.subscribe("C1", REPO)
    relay.deliver(PR_CREATED, pr_payload(), secret=secret)

    relay.deliver(PR_REJECTED, pr_payload(actor="erin"), secret=secret)

    _, message_id = _only_post(relay)
    assert relay.sink.field(message_id, "Status") == "❌ Declined by *erin*"
    assert relay.sink.replies[-1][2] == "❌ Declined by *erin*"


def test_merged_without_card_posts_fresh_card_per_channel(relay, store):
    store.subscribe("C1", REPO)
    secret = store.subscribe("C2", REPO)

    result = relay.deliver(PR_FULFILLED, pr_payload(pr_id=11, actor="dave"), secret=secret)

    assert result.accepted
    assert [post[0] for post in relay.sink.posts] == ["C1", "C2"]
    assert relay.sink.replies == []
    for _, message_id, _ in relay.sink.posts:
        assert relay.sink.field(message_id, "Status") == "🎉 Merged by *dave*"
    assert len(store.get_message_pointers(REPO, 11)) == 2


def test_approved_without_card_falls_back_to_posting(relay, store):
    secret = store.subscribe("C1", REPO)

    relay.deliver(PR_APPROVED, pr_payload(pr_id=12, actor="alice"), secret=secret)

    _, message_id = _only_post(relay)
    assert relay.sink.field(message_id, "Status") == "✅ Approved by *alice*"


# ---------------------------------------------------------------------------
# Comments
# ---------------------------------------------------------------------------


def test_long_comment_is_truncated_to_300_characters(relay, store):
    secret = store.subscribe("C1", REPO)
    relay.deliver(PR_CREATED, pr_payload(), secret=secret)
    body = "".join(chr(ord("a") + i % 26) for i in range(400))

    relay.deliver(PR_COMMENT_CREATED, pr_payload(actor="bob", comment=body), secret=secret)

    (channel_id, parent, text), = relay.sink.replies
    assert text.startswith("💬 *bob* commented:")
    assert text.endswith(body[:300] + "…")
    assert body[:301] not in text


def test_short_comment_is_threaded_verbatim(relay, store):
    secret = store.subscribe("C1", REPO)
    relay.deliver(PR_CREATED, pr_payload(), secret=secret)
    body = "y" * 200

    relay.deliver(PR_COMMENT_CREATED, pr_payload(actor="bob", comment=body), secret=secret)

    text = relay.sink.replies[0][2]
    assert text.endswith(body)
    assert "…" not in text


def test_comment_does_not_touch_card(relay, store):
    secret = store.subscribe("C1", REPO)
    relay.deliver(PR_CREATED, pr_payload(), secret=secret)

    relay.deliver(PR_COMMENT_CREATED, pr_payload(actor="bob", comment="nice"), secret=secret)

    assert relay.sink.updates == []


def test_comment_without_card_produces_no_output(relay, store):
    secret = store.subscribe("C1", REPO)

    relay.deliver(PR_COMMENT_CREATED, pr_payload(actor="bob", comment="hello"), secret=secret)

    assert relay.sink.posts == []
    assert relay.sink.replies == []


# ---------------------------------------------------------------------------
# Build status
# ---------------------------------------------------------------------------


def test_build_status_for_unknown_commit_only_updates_cache(relay, store):
    secret = store.subscribe("C1", REPO)

    result = relay.deliver(COMMIT_STATUS_CREATED, commit_status_payload(commit="feedface"), secret=secret)

    assert result.accepted
    assert store.get_build_status(REPO, "feedface").state == BuildState.SUCCESS
    assert relay.sink.posts == []
    assert relay.sink.updates == []
    assert relay.sink.replies == []


def test_build_status_updates_every_pr_on_the_commit(relay, store):
    secret = store.subscribe("C1", REPO)
    relay.deliver(PR_CREATED, pr_payload(pr_id=1, commit="c0ffee"), secret=secret)
    relay.deliver(PR_CREATED, pr_payload(pr_id=2, commit="c0ffee"), secret=secret)
    relay.deliver(PR_CREATED, pr_payload(pr_id=3, commit="other"), secret=secret)

    relay.deliver(COMMIT_STATUS_UPDATED, commit_status_payload(commit="c0ffee", state="FAILED"), secret=secret)

    card_ids = {post[1] for post in relay.sink.posts[:2]}
    assert {update[1] for update in relay.sink.updates} == card_ids
    for message_id in card_ids:
        assert relay.sink.field(message_id, "Build").startswith("❌ [Pipeline #12](")
    assert len(relay.sink.replies) == 2
    assert all(reply[2].startswith("❌ Build failed: [Pipeline #12]") for reply in relay.sink.replies)
    untouched = relay.sink.posts[2][1]
    assert relay.sink.field(untouched, "Build") == "—"


def test_build_status_reply_prefix_depends_on_state(relay, store):
    secret = store.subscribe("C1", REPO)
    relay.deliver(PR_CREATED, pr_payload(commit="c0ffee"), secret=secret)

    for state in ("INPROGRESS", "SUCCESSFUL", "STOPPED"):
        relay.deliver(COMMIT_STATUS_UPDATED, commit_status_payload(commit="c0ffee", state=state), secret=secret)

    assert [reply[2].split(":")[0] for reply in relay.sink.replies] == [
        "⏳ Build started",
        "✅ Build passed",
        "🛑 Build stopped",
    ]


def test_build_status_arriving_before_the_pr_is_shown_on_creation(relay, store):
    secret = store.subscribe("C1", REPO)

    relay.deliver(COMMIT_STATUS_CREATED, commit_status_payload(commit="c0ffee", state="INPROGRESS"), secret=secret)
    relay.deliver(PR_CREATED, pr_payload(commit="c0ffee"), secret=secret)

    _, message_id = _only_post(relay)
    assert relay.sink.field(message_id, "Build").startswith("⏳ [Pipeline #12](")


def test_build_status_keeps_merged_status_line(relay, store):
    secret = store.subscribe("C1", REPO)
    relay.deliver(PR_CREATED, pr_payload(commit="c0ffee"), secret=secret)
    relay.deliver(PR_FULFILLED, pr_payload(commit="c0ffee", actor="dave"), secret=secret)

    relay.deliver(COMMIT_STATUS_UPDATED, commit_status_payload(commit="c0ffee"), secret=secret)

    _, message_id = _only_post(relay)
    assert relay.sink.field(message_id, "Status") == "🎉 Merged by *dave*"


def test_pr_updated_moves_card_to_new_commit_without_reply(relay, store):
    secret = store.subscribe("C1", REPO)
    relay.deliver(PR_CREATED, pr_payload(commit="old"), secret=secret)
    relay.deliver(COMMIT_STATUS_CREATED, commit_status_payload(commit="new"), secret=secret)

    relay.deliver(PR_UPDATED, pr_payload(commit="new"), secret=secret)

    _, message_id = _only_post(relay)
    assert relay.sink.field(message_id, "Build").startswith("✅")
    assert relay.sink.replies == []
    assert store.get_card(REPO, 7).latest_source_commit == "new"


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


def test_sink_failure_in_one_channel_does_not_block_others(relay, store):
    store.subscribe("C1", REPO)
    secret = store.subscribe("C2", REPO)
    relay.deliver(PR_CREATED, pr_payload(), secret=secret)
    relay.sink.failing_channels.add("C1")

    relay.deliver(PR_APPROVED, pr_payload(actor="alice"), secret=secret)

    assert [update[0] for update in relay.sink.updates] == ["C2"]
    assert [reply[0] for reply in relay.sink.replies] == ["C2"]


def test_failed_post_records_no_pointer(relay, store):
    store.subscribe("C1", REPO)
    secret = store.subscribe("C2", REPO)
    relay.sink.failing_channels.add("C1")

    relay.deliver(PR_CREATED, pr_payload(), secret=secret)

    assert [p.channel_id for p in store.get_message_pointers(REPO, 7)] == ["C2"]


def test_unexpected_error_in_one_channel_does_not_block_others(relay, store):
    store.subscribe("C1", REPO)
    secret = store.subscribe("C2", REPO)
    relay.sink.errors["C1"] = asyncio.TimeoutError()

    relay.deliver(PR_CREATED, pr_payload(), secret=secret)

    assert [post[0] for post in relay.sink.posts] == ["C2"]
    assert [p.channel_id for p in store.get_message_pointers(REPO, 7)] == ["C2"]


def test_unexpected_update_and_reply_errors_are_isolated_per_channel(relay, store):
    store.subscribe("C1", REPO)
    secret = store.subscribe("C2", REPO)
    relay.deliver(PR_CREATED, pr_payload(), secret=secret)
    relay.sink.errors["C1"] = ValueError("invalid literal for int() with base 10: 'general'")

    relay.deliver(PR_APPROVED, pr_payload(actor="alice"), secret=secret)

    assert [update[0] for update in relay.sink.updates] == ["C2"]
    assert [reply[0] for reply in relay.sink.replies] == ["C2"]


def test_bad_signature_is_rejected_without_side_effects(relay, store):
    store.subscribe("C1", REPO)

    result = relay.deliver(PR_APPROVED, pr_payload(actor="mallory"), signature="sha256=" + "0" * 64)

    assert not result.accepted
    assert (result.message, result.status_code) == ("unauthorized", 401)
    assert store.get_approvals(REPO, 7) == []
    assert store.get_card(REPO, 7) is None
    assert relay.sink.posts == []


def test_missing_signature_is_rejected_when_secret_exists(relay, store):
    store.subscribe("C1", REPO)

    result = relay.deliver(PR_CREATED, pr_payload())

    assert result.status_code == 401


def test_unsubscribed_repository_is_accepted_unverified(relay, store):
    result = relay.deliver(PR_APPROVED, pr_payload(actor="alice"))

    assert result.accepted
    assert store.get_approvals(REPO, 7) == ["alice"]


def test_unknown_event_is_accepted_and_dropped(relay, store):
    result = relay.deliver("repo:push", {"repository": {"full_name": REPO}})

    assert result.accepted
    assert relay.pending == []
    assert relay.sink.posts == []


def test_unparseable_body_is_rejected(relay):
    result = relay.handler.handle(PR_CREATED, b"{not json", "")

    assert (result.accepted, result.message, result.status_code) == (False, "unparseable", 400)
    assert relay.pending == []


def test_payload_without_pr_id_is_rejected(relay):
    payload = pr_payload()
    del payload["pullrequest"]["id"]

    result = relay.deliver(PR_CREATED, payload)

    assert result.status_code == 400


def test_store_failure_aborts_only_that_event(relay, store, monkeypatch):
    secret = store.subscribe("C1", REPO)

    def broken_save_card(card):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store, "save_card", broken_save_card)
    relay.deliver(PR_CREATED, pr_payload(pr_id=1), secret=secret)
    assert relay.sink.posts == []

    monkeypatch.undo()
    relay.deliver(PR_CREATED, pr_payload(pr_id=2), secret=secret)
    assert len(relay.sink.posts) == 1


def test_handle_only_authenticates_before_returning(relay, store):
    secret = store.subscribe("C1", REPO)
    body = json.dumps(pr_payload()).encode("utf-8")

    result = relay.handler.handle(PR_CREATED, body, sign(secret, body))

    assert result.accepted
    assert len(relay.pending) == 1
    assert store.get_card(REPO, 7) is None

    relay.run_pending()
    assert store.get_card(REPO, 7) is not None


def test_rendering_is_stable_for_unchanged_state(relay, store):
    secret = store.subscribe("C1", REPO)
    relay.deliver(PR_CREATED, pr_payload(reviewers=("alice",)), secret=secret)
    card = store.get_card(REPO, 7)

    first = json.dumps(relay.handler.render(card), sort_keys=True)
    second = json.dumps(relay.handler.render(card), sort_keys=True)

    assert first == second


# ---------------------------------------------------------------------------
# Concurrency and readiness
# ---------------------------------------------------------------------------


def _queue(relay, event_key, payload, secret):
    body = json.dumps(payload).encode("utf-8")
    assert relay.handler.handle(event_key, body, sign(secret, body)).accepted


def test_concurrent_duplicate_created_posts_a_single_card(relay, store):
    secret = store.subscribe("C1", REPO)
    _queue(relay, PR_CREATED, pr_payload(), secret)
    _queue(relay, PR_CREATED, pr_payload(), secret)

    relay.run_concurrently()

    channel_id, message_id = _only_post(relay)
    assert [u[1] for u in relay.sink.updates] == [message_id]
    assert store.get_message_pointers(REPO, 7)[0].message_id == message_id


def test_concurrent_fallback_events_post_a_single_card(relay, store):
    secret = store.subscribe("C1", REPO)
    _queue(relay, PR_APPROVED, pr_payload(actor="alice"), secret)
    _queue(relay, PR_APPROVED, pr_payload(actor="bob"), secret)

    relay.run_concurrently()

    _only_post(relay)
    assert relay.handler._channel_locks == {}


def test_delivery_before_loop_is_attached_is_not_ready(store):
    secret = store.subscribe("C1", REPO)
    handler = PRHandler(store, FakeSink())
    body = json.dumps(pr_payload()).encode("utf-8")

    result = handler.handle(PR_CREATED, body, sign(secret, body))

    assert not result.accepted
    assert result.status_code == 503
    assert store.get_card(REPO, 7) is None
