from datetime import timedelta

import pytest

from speculate.errors import AuthorizationError, StateConflictError, ValidationError
from speculate.services import comment_service


class TestSpoilerGate:
    def test_keyword_detection(self):
        assert comment_service.contains_spoiler("I bet the king DIES")
        assert comment_service.contains_spoiler("Spoiler: it was the butler")
        assert not comment_service.contains_spoiler("Great episode")

    def test_spoiler_hidden_until_after_air_plus_grace(self, alice, bob, episode, now):
        comment = comment_service.create_comment(
            alice, "Pretty sure the mentor dies tonight", episode_id=episode.id, now=now
        )
        assert comment.is_spoiler is True

        air = episode.air_date_utc
        assert comment_service.list_comments(viewer_id=bob.id, episode_id=episode.id, now=now) == []
        assert comment_service.list_comments(viewer_id=None, episode_id=episode.id, now=now) == []

        # Author always sees their own comment
        own = comment_service.list_comments(viewer_id=alice.id, episode_id=episode.id, now=now)
        assert [c["id"] for c in own] == [comment.id]

        still_hidden = air + timedelta(minutes=59)
        assert comment_service.list_comments(
            viewer_id=bob.id, episode_id=episode.id, now=still_hidden
        ) == []

        visible = air + timedelta(minutes=60)
        assert [
            c["id"]
            for c in comment_service.list_comments(viewer_id=bob.id, episode_id=episode.id, now=visible)
        ] == [comment.id]

    def test_no_gate_after_air(self, alice, bob, episode, now):
        after_air = now + timedelta(hours=13)
        comment = comment_service.create_comment(
            alice, "So the mentor dies!", episode_id=episode.id, now=after_air
        )

        assert comment.visible_after is None
        assert len(comment_service.list_comments(viewer_id=bob.id, episode_id=episode.id, now=after_air)) == 1

    def test_prediction_comment_gated_by_its_episode(self, alice, bob, prediction, now):
        comment_service.create_comment(
            alice, "Spoiler: leaked script says yes", prediction_id=prediction.id, now=now
        )
        comment_service.create_comment(alice, "Tough call", prediction_id=prediction.id, now=now)

        visible = comment_service.list_comments(viewer_id=bob.id, prediction_id=prediction.id, now=now)
        assert [c["body"] for c in visible] == ["Tough call"]

    def test_requires_target_and_body(self, alice):
        with pytest.raises(ValidationError):
            comment_service.create_comment(alice, "Hello")
        with pytest.raises(ValidationError):
            comment_service.create_comment(alice, "   ", episode_id=1)


class TestVotes:
    def test_tallies_recounted_from_votes(self, alice, bob, carol, episode, now):
        comment = comment_service.create_comment(alice, "Nice theory", episode_id=episode.id, now=now)

        comment_service.vote_comment(comment.id, bob.id, 1)
        comment_service.vote_comment(comment.id, carol.id, -1)
        result = comment_service.vote_comment(comment.id, bob.id, -1)
        assert result == {"comment_id": comment.id, "upvotes": 0, "downvotes": 2}

        result = comment_service.vote_comment(comment.id, bob.id, 0)
        assert result["downvotes"] == 1

        listed = comment_service.list_comments(viewer_id=carol.id, episode_id=episode.id, now=now)
        assert listed[0]["score"] == -1
        assert listed[0]["viewer_vote"] == -1

    def test_invalid_vote(self, alice, bob, episode, now):
        comment = comment_service.create_comment(alice, "Hmm", episode_id=episode.id, now=now)
        with pytest.raises(ValidationError):
            comment_service.vote_comment(comment.id, bob.id, 2)


class TestDelete:
    def test_only_author_can_delete(self, alice, bob, episode, now):
        comment = comment_service.create_comment(alice, "Oops", episode_id=episode.id, now=now)

        with pytest.raises(AuthorizationError):
            comment_service.delete_comment(comment.id, bob.id)

        deleted = comment_service.delete_comment(comment.id, alice.id)
        assert deleted.is_deleted is True
        assert deleted.body == "[deleted]"

        with pytest.raises(StateConflictError):
            comment_service.vote_comment(comment.id, bob.id, 1)
