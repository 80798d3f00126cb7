"""Tests for reaction reconciliation from the review ledger."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeChatClient


T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _message(channel="C0WIDGETS", ts="1714564800.000001", pr=42):
    from prrelay.common.schemas import TrackedMessage
    return TrackedMessage(
        repo_full_name="acme/widgets",
        pr_number=pr,
        slack_channel=channel,
        slack_message_ts=ts,
    )


def _ledger(**reviews):
    from prrelay.common.schemas import PullRequestReviewLedger, ReviewState
    ledger = PullRequestReviewLedger(repo_full_name="acme/widgets", pr_number=42)
    for i, (reviewer, state) in enumerate(reviews.items()):
        ledger.record_review(reviewer, ReviewState(state), T0 + timedelta(minutes=i), review_id=i + 1)
    return ledger


class TestDesiredSet:
    def test_one_emoji_per_distinct_state(self, chat):
        from prrelay.pipeline.reaction_sync import ReactionSynchronizer
        sync = ReactionSynchronizer(chat)
        ledger = _ledger(bob="approved", carol="changes_requested", dave="approved")
        assert sync.desired_review_set(ledger) == {"white_check_mark", "arrows_counterclockwise"}

    def test_dismissed_reviewer_contributes_nothing(self, chat):
        from prrelay.common.schemas import ReviewState
        from prrelay.pipeline.reaction_sync import ReactionSynchronizer
        sync = ReactionSynchronizer(chat)
        ledger = _ledger(bob="approved")
        ledger.dismiss_review("bob", ReviewState.APPROVED, T0, review_id=1)
        assert sync.desired_review_set(ledger) == set()

    def test_custom_emoji_names(self, chat):
        from prrelay.common.config import EmojiConfig
        from prrelay.pipeline.reaction_sync import ReactionSynchronizer
        sync = ReactionSynchronizer(chat, EmojiConfig(approved="shipit"))
        assert sync.desired_review_set(_ledger(bob="approved")) == {"shipit"}
        assert "shipit" in sync.review_universe


class TestSyncMessage:
    def test_replaces_stale_review_emoji(self, chat, log):
        from prrelay.pipeline.reaction_sync import ReactionSynchronizer
        sync = ReactionSynchronizer(chat)
        message = _message()
        chat.reactions[(message.slack_channel, message.slack_message_ts)] = {"arrows_counterclockwise"}

        result = asyncio.run(sync.sync_message(message, _ledger(bob="approved"), log))

        assert chat.reactions_on(message.slack_channel, message.slack_message_ts) == {"white_check_mark"}
        assert result.removed == ["arrows_counterclockwise"]
        assert result.added == ["white_check_mark"]
        assert result.ok

    def test_repeat_sync_is_a_noop(self, chat, log):
        from prrelay.pipeline.reaction_sync import ReactionSynchronizer
        sync = ReactionSynchronizer(chat)
        message = _message()
        ledger = _ledger(bob="approved", carol="commented")

        asyncio.run(sync.sync_message(message, ledger, log))
        result = asyncio.run(sync.sync_message(message, ledger, log))

        assert result.added == []
        assert result.removed == []
        assert set(result.unchanged) == sync.review_universe
        assert chat.reactions_on(message.slack_channel, message.slack_message_ts) == {
            "white_check_mark", "speech_balloon"
        }

    def test_terminal_emoji_coexists_with_reviews(self, chat, log):
        from prrelay.common.schemas import ClosedState
        from prrelay.pipeline.reaction_sync import ReactionSynchronizer
        sync = ReactionSynchronizer(chat)
        message = _message()
        ledger = _ledger(bob="approved")
        ledger.closed_state = ClosedState.MERGED

        asyncio.run(sync.sync_message(message, ledger, log))

        assert chat.reactions_on(message.slack_channel, message.slack_message_ts) == {"white_check_mark", "tada"}

    def test_review_sync_never_removes_terminal_emoji(self, chat, log):
        from prrelay.common.schemas import ClosedState
        from prrelay.pipeline.reaction_sync import ReactionSynchronizer
        sync = ReactionSynchronizer(chat)
        message = _message()
        ledger = _ledger()
        ledger.closed_state = ClosedState.CLOSED
        chat.reactions[(message.slack_channel, message.slack_message_ts)] = {"x", "speech_balloon"}

        asyncio.run(sync.sync_message(message, ledger, log))

        assert chat.reactions_on(message.slack_channel, message.slack_message_ts) == {"x"}
        assert ("remove", message.slack_channel, message.slack_message_ts, "x") not in chat.calls

    def test_one_failed_emoji_does_not_block_the_rest(self, chat, log):
        from prrelay.common.errors import TransientExternalError
        from prrelay.pipeline.reaction_sync import ReactionSynchronizer
        sync = ReactionSynchronizer(chat)
        message = _message()
        chat.fail_next("add", "white_check_mark", TransientExternalError("ratelimited"))

        result = asyncio.run(sync.sync_message(message, _ledger(bob="approved", carol="commented"), log))

        assert result.transient_failures == ["white_check_mark"]
        assert result.added == ["speech_balloon"]


class TestSyncAll:
    def test_fans_out_to_every_message(self, chat, log):
        from prrelay.pipeline.reaction_sync import ReactionSynchronizer
        sync = ReactionSynchronizer(chat)
        messages = [_message("C0WIDGETS", "1.1"), _message("C0PLATFORM", "2.2")]

        results = asyncio.run(sync.sync_all(messages, _ledger(bob="changes_requested"), log))

        for m in messages:
            assert chat.reactions_on(m.slack_channel, m.slack_message_ts) == {"arrows_counterclockwise"}
        assert sum(len(r.added) for r in results) == 2

    def test_transient_failure_raised_after_all_messages_attempted(self, chat, log):
        from prrelay.common.errors import TransientExternalError
        from prrelay.pipeline.reaction_sync import ReactionSynchronizer
        sync = ReactionSynchronizer(chat)
        messages = [_message("C0WIDGETS", "1.1"), _message("C0PLATFORM", "2.2")]
        chat.fail_next("add", "white_check_mark", TransientExternalError("ratelimited"))

        with pytest.raises(TransientExternalError):
            asyncio.run(sync.sync_all(messages, _ledger(bob="approved"), log))

        # The second message was still reconciled
        assert chat.reactions_on("C0PLATFORM", "2.2") == {"white_check_mark"}

    def test_permanent_failure_is_isolated_and_not_raised(self, log):
        from prrelay.common.errors import PermanentExternalError
        from prrelay.pipeline.reaction_sync import ReactionSynchronizer
        chat = FakeChatClient()
        sync = ReactionSynchronizer(chat)
        messages = [_message("C0GONE0001", "1.1"), _message("C0PLATFORM", "2.2")]
        chat.fail_next("add", "white_check_mark", PermanentExternalError("channel_not_found", code="channel_not_found"))

        results = asyncio.run(sync.sync_all(messages, _ledger(bob="approved"), log))

        assert results[0].permanent_failures == ["white_check_mark"]
        assert results[1].ok
