"""Tests for the Discord -> GitHub side of the sync protocol."""

from __future__ import annotations

from forum_sync.helpers import BOT_MARKER
from forum_sync.models import ChatThread, ForumTag, IssueCommentRef, IssueRef, Thread
from tests.conftest import ALPHA_CHANNEL, BETA_CHANNEL, chat_message, encode


def thread_event(thread_id: int = 10, parent_id: int = ALPHA_CHANNEL, **state) -> ChatThread:
    return ChatThread(id=thread_id, parent_id=parent_id, name="Question", **state)


def linked_row(env, thread_id: int = 10, number: int = 1, **state) -> Thread:
    row = Thread(id=thread_id, title="Question", body="body", number=number, node_id=f"I_{number}", **state)
    env.store().add_thread(row)
    return row


# ---------------------------------------------------------------------------
# Thread and message creation
# ---------------------------------------------------------------------------


class TestThreadCreate:
    async def test_inserts_unlinked_row(self, env):
        await env.discord.handle_thread_create(thread_event(applied_tag_ids=[3]))

        row = env.store().get_thread(10)
        assert row is not None
        assert not row.linked
        assert row.applied_tag_ids == [3]

    async def test_unmanaged_channel_is_ignored(self, env):
        await env.discord.handle_thread_create(thread_event(parent_id=12345))

        assert env.store("m1").threads == []
        assert env.store("m2").threads == []


class TestMessages:
    async def test_first_message_creates_issue(self, env):
        env.store().available_tags = [ForumTag(3, "question")]
        await env.discord.handle_thread_create(thread_event(applied_tag_ids=[3]))

        await env.discord.handle_message(chat_message(11, 10, content="How do I ...?"))

        row = env.store().get_thread(10)
        assert row.number == 1
        assert row.node_id == "I_1"
        issue = env.github.issues[1]
        assert issue.title == "Question"
        assert issue.labels == ["question"]
        assert BOT_MARKER in issue.body
        assert "https://discord.com/channels/999/10/11" in issue.body

    async def test_later_messages_become_comments(self, env):
        await env.discord.handle_thread_create(thread_event())
        await env.discord.handle_message(chat_message(11, 10))

        await env.discord.handle_message(chat_message(12, 10, content="more detail"))

        comment = env.store().get_thread(10).find_comment_by_message(12)
        assert comment is not None
        assert "more detail" in env.github.comments[comment.git_id].body

    async def test_bot_and_relay_messages_are_skipped(self, env):
        await env.discord.handle_thread_create(thread_event())

        await env.discord.handle_message(chat_message(11, 10, author_is_bot=True))
        await env.discord.handle_message(chat_message(12, 10, webhook_id=77))

        assert env.github.calls == []

    async def test_message_while_issue_is_pending_is_not_a_second_issue(self, env):
        env.store().add_thread(Thread(id=10, title="Question", body="being created"))

        await env.discord.handle_message(chat_message(11, 10))

        assert env.github.calls == []

    async def test_failed_issue_creation_frees_the_row(self, env):
        await env.discord.handle_thread_create(thread_event())
        env.github.fail["create_issue"] = RuntimeError("down")

        await env.discord.handle_message(chat_message(11, 10))

        row = env.store().get_thread(10)
        assert row.body is None
        assert env.store().get_metrics().sync_errors == 1

        del env.github.fail["create_issue"]
        await env.discord.handle_message(chat_message(12, 10))
        assert env.store().get_thread(10).linked

    async def test_message_in_untracked_thread_is_ignored(self, env):
        await env.discord.handle_message(chat_message(11, 99))
        assert env.github.calls == []


class TestRoundTripComment:
    async def test_discord_message_then_github_delete(self, env):
        """Message -> comment with a row; deleting that comment on GitHub removes row and message once."""
        env.gateway.add_thread(10, ALPHA_CHANNEL, "Question")
        linked_row(env)
        env.gateway.messages[12] = (10, "more detail", None)

        await env.discord.handle_message(chat_message(12, 10, content="more detail"))
        comment = env.store().get_thread(10).find_comment_by_message(12)
        assert comment is not None

        payload = {
            "action": "deleted",
            "issue": {"number": 1, "node_id": "I_1"},
            "comment": {"id": comment.git_id, "body": ""},
            "repository": {"owner": {"login": "octo"}, "name": "alpha"},
        }
        status, _ = await env.router.handle({}, encode(payload))
        assert status == 200
        status, body = await env.router.handle({}, encode(payload))
        assert (status, body) == (200, {"status": "ignored"})

        assert env.gateway.deleted_messages == [12]
        assert env.store().get_thread(10).comments == []


class TestMessageDelete:
    async def test_deletes_comment(self, env):
        row = linked_row(env)
        env.github.comments[900] = IssueCommentRef(900, 1, "hi")
        env.store().add_comment(row.id, 12, 900)

        await env.discord.handle_message_delete(10, ALPHA_CHANNEL, 12)

        assert env.github.deleted_comments == [900]
        assert row.comments == []

    async def test_already_deleted_comment_is_consistent(self, env):
        row = linked_row(env)
        env.store().add_comment(row.id, 12, 900)

        await env.discord.handle_message_delete(10, ALPHA_CHANNEL, 12)

        assert row.comments == []
        assert env.store().get_metrics().sync_errors == 0

    async def test_unknown_message_is_ignored(self, env):
        linked_row(env)
        await env.discord.handle_message_delete(10, ALPHA_CHANNEL, 12)
        assert env.github.calls == []


class TestThreadDelete:
    async def test_deletes_issue(self, env):
        linked_row(env)

        await env.discord.handle_thread_delete(10, ALPHA_CHANNEL)

        assert env.github.deleted_issues == ["I_1"]
        assert env.store().get_thread(10) is None

    async def test_unlinked_thread_only_drops_row(self, env):
        await env.discord.handle_thread_create(thread_event())

        await env.discord.handle_thread_delete(10, ALPHA_CHANNEL)

        assert env.github.calls == []
        assert env.store().get_thread(10) is None

    async def test_failure_is_recorded(self, env):
        linked_row(env)
        env.github.fail["delete_issue"] = RuntimeError("down")

        await env.discord.handle_thread_delete(10, ALPHA_CHANNEL)

        assert env.store().get_metrics().sync_errors == 1


# ---------------------------------------------------------------------------
# Thread state mirroring
# ---------------------------------------------------------------------------


class TestThreadUpdate:
    async def test_archive_closes_issue(self, env):
        linked_row(env)

        await env.discord.handle_thread_update(thread_event(archived=True))

        assert env.github.updates == [(1, {"state": "closed"})]
        assert env.store().get_thread(10).archived

    async def test_unarchive_reopens_issue(self, env):
        linked_row(env, archived=True)

        await env.discord.handle_thread_update(thread_event(archived=False))

        assert env.github.updates == [(1, {"state": "open"})]

    async def test_lock_and_unlock(self, env):
        linked_row(env)

        await env.discord.handle_thread_update(thread_event(locked=True))
        assert env.github.locked == {1: True}

        await env.discord.handle_thread_update(thread_event(locked=False))
        assert env.github.locked == {1: False}

    async def test_locking_archived_thread_is_one_lock(self, env):
        """Discord reopens, locks and re-archives; only the lock reaches GitHub."""
        linked_row(env, archived=True)

        await env.discord.handle_thread_update(thread_event(archived=False, locked=True))
        await env.discord.handle_thread_update(thread_event(archived=True, locked=True))

        assert env.github.locked == {1: True}
        assert env.github.updates == []
        row = env.store().get_thread(10)
        assert row.archived and row.locked
        assert not row.lock_archiving

    async def test_later_unarchive_still_mirrors_after_lock(self, env):
        linked_row(env, archived=True)
        await env.discord.handle_thread_update(thread_event(archived=False, locked=True))
        await env.discord.handle_thread_update(thread_event(archived=True, locked=True))

        await env.discord.handle_thread_update(thread_event(archived=False, locked=True))

        assert env.github.updates == [(1, {"state": "open"})]

    async def test_tag_changes_are_recorded(self, env):
        linked_row(env)
        await env.discord.handle_thread_update(thread_event(applied_tag_ids=[4, 5]))
        assert env.store().get_thread(10).applied_tag_ids == [4, 5]

    async def test_unlinked_row_changes_nothing_on_github(self, env):
        await env.discord.handle_thread_create(thread_event())
        await env.discord.handle_thread_update(thread_event(archived=True))
        assert env.github.calls == []

    async def test_failure_is_recorded_not_raised(self, env):
        linked_row(env)
        env.github.fail["update_issue"] = RuntimeError("down")

        await env.discord.handle_thread_update(thread_event(archived=True))

        assert env.store().get_metrics().sync_errors == 1
        assert env.error_handler.get_metrics("m1").total_errors == 1


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


class TestBootstrap:
    async def test_rebuilds_store_from_github(self, env):
        env.gateway.tags[ALPHA_CHANNEL] = [ForumTag(1, "bug")]
        link = "https://discord.com/channels/999/10/11"
        env.github.issues = {
            1: IssueRef(1, "I_1", "From Discord", f"[alice]({link}) {BOT_MARKER}", state="closed", labels=["bug"]),
            2: IssueRef(2, "I_2", "Native issue", "no link"),
            3: IssueRef(3, "I_3", "PR", f"[x]({link})", is_pull_request=True),
        }
        env.github.comments = {
            900: IssueCommentRef(900, 1, "[bob](https://discord.com/channels/999/10/12) `BOT`"),
            901: IssueCommentRef(901, 1, "plain GitHub comment"),
        }

        count = await env.discord.bootstrap_mapping(env.context())

        assert count == 1
        row = env.store().get_thread(10)
        assert (row.number, row.node_id, row.archived) == (1, "I_1", True)
        assert row.applied_tag_ids == [1]
        assert [(c.id, c.git_id) for c in row.comments] == [(12, 900)]
        assert env.store().available_tags == [ForumTag(1, "bug")]

    async def test_handle_ready_isolates_mapping_failures(self, env):
        original = env.github.list_issues

        async def list_issues(credentials, state="all"):
            if credentials.repo == "alpha":
                raise RuntimeError("alpha is broken")
            return await original(credentials, state)

        env.github.list_issues = list_issues
        env.github.issues = {1: IssueRef(1, "I_1", "x", "[a](https://discord.com/channels/999/20/21)")}

        await env.discord.handle_ready()

        assert env.store("m1").get_metrics().sync_errors == 1
        assert env.store("m2").get_thread(20) is not None


async def test_channel_update_refreshes_tags(env):
    await env.discord.handle_channel_update(BETA_CHANNEL, [ForumTag(7, "help")])

    assert env.store("m2").available_tags == [ForumTag(7, "help")]
    assert env.store("m1").available_tags == []
