from datetime import timedelta

import pytest

from speculate import db
from speculate.errors import (
    AuthorizationError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from speculate.models import (
    AuditLog,
    PointsLedgerEntry,
    Prediction,
    PredictionOptionStats,
    PredictionPick,
    UserStats,
)
from speculate.models.points_ledger import (
    REASON_PICK_CORRECT,
    REASON_REFUND,
    REASON_RESOLUTION_CORRECTION,
)
from speculate.models.prediction import STATE_LOCKED, STATE_RESOLVED, STATE_VOID
from speculate.services import prediction_engine
from speculate.services.prediction_engine import ALREADY_PICKED_MESSAGE


def _options(prediction):
    yes, no = prediction.options
    return yes, no


def _pick_worth_90(prediction, user, seed_counts, now):
    """15% of 1000 picks on 'Yes', three hours before lock"""
    yes, no = _options(prediction)
    seed_counts(prediction, {yes.id: 150, no.id: 850})
    result = prediction_engine.submit_pick(
        prediction.id, yes.id, user.id, now=now + timedelta(hours=9)
    )
    assert result["potential_points"] == 90
    return result


def _ledger(user, reason=None):
    query = PointsLedgerEntry.query.filter_by(user_id=user.id)
    if reason:
        query = query.filter_by(reason=reason)
    return query.order_by(PointsLedgerEntry.id).all()


def _set_state(prediction, state):
    """Change a prediction's state without touching the loaded object"""
    db.session.execute(
        db.update(Prediction)
        .where(Prediction.id == prediction.id)
        .values(state=state)
        .execution_options(synchronize_session=False)
    )


class TestCreatePrediction:
    def test_defaults_lock_to_air_time(self, prediction, episode):
        assert prediction.state == "open"
        assert prediction.lock_at.replace(tzinfo=None) == episode.air_date_utc.replace(tzinfo=None)
        assert [o.ordinal for o in prediction.options] == [0, 1]
        assert [o.value for o in prediction.options] == ["yes", "no"]

    def test_creates_zeroed_option_counters(self, prediction):
        counts = PredictionOptionStats.counts_for(prediction.id)
        assert sorted(counts.values()) == [0, 0]
        assert set(counts) == {o.id for o in prediction.options}

    def test_binary_needs_two_options(self, make_prediction):
        with pytest.raises(ValidationError):
            make_prediction(options=["Yes", "No", "Maybe"])

    def test_multiple_choice_bounds(self, make_prediction):
        prediction = make_prediction(
            kind="multiple_choice", options=["Arya", "Sansa", "Bran"]
        )
        assert len(prediction.options) == 3

        with pytest.raises(ValidationError):
            make_prediction(kind="multiple_choice", options=[f"Option {i}" for i in range(11)])

    def test_lock_must_be_in_future(self, make_prediction, now):
        with pytest.raises(ValidationError):
            make_prediction(lock_at=now - timedelta(minutes=1))

    def test_requires_author(self, show, now):
        with pytest.raises(AuthorizationError):
            prediction_engine.create_prediction(
                None, show.id, "Anything?", "show", "binary", ["Yes", "No"],
                lock_at=now + timedelta(days=1), now=now,
            )


class TestSubmitPick:
    def test_first_pick_scores_70(self, prediction, alice, now):
        yes, _ = _options(prediction)
        result = prediction_engine.submit_pick(prediction.id, yes.id, alice.id, now=now)

        assert result["potential_points"] == 70
        assert result["community_probability"] == 0.5

        pick = db.session.get(PredictionPick, result["pick_id"])
        assert pick.earned_points == 0
        assert pick.pre_lock_community_probability == 0.5

    def test_contrarian_pick_scores_90(self, prediction, alice, seed_counts, now):
        _pick_worth_90(prediction, alice, seed_counts, now)

    def test_increments_option_counter(self, prediction, alice, bob, now):
        yes, no = _options(prediction)
        prediction_engine.submit_pick(prediction.id, yes.id, alice.id, now=now)
        prediction_engine.submit_pick(prediction.id, yes.id, bob.id, now=now)

        counts = PredictionOptionStats.counts_for(prediction.id)
        assert counts[yes.id] == 2
        assert counts[no.id] == 0
        assert prediction.picks_count == 2

    def test_later_pick_sees_earlier_split(self, prediction, alice, bob, now):
        yes, no = _options(prediction)
        prediction_engine.submit_pick(prediction.id, yes.id, alice.id, now=now)
        result = prediction_engine.submit_pick(prediction.id, no.id, bob.id, now=now)

        # 'No' had 0 of 1 picks: contrarian plus early bonus
        assert result["community_probability"] == 0.0
        assert result["potential_points"] == 50 + 20 + 40

    def test_duplicate_pick_rejected_for_any_option(self, prediction, alice, now):
        yes, no = _options(prediction)
        prediction_engine.submit_pick(prediction.id, yes.id, alice.id, now=now)

        for option_id in (yes.id, no.id, 999999):
            with pytest.raises(StateConflictError) as excinfo:
                prediction_engine.submit_pick(prediction.id, option_id, alice.id, now=now)
            assert excinfo.value.code == "already_picked"
            assert excinfo.value.message == ALREADY_PICKED_MESSAGE

        assert PredictionPick.query.filter_by(user_id=alice.id).count() == 1

    def test_option_from_another_prediction(self, prediction, make_prediction, alice, now):
        other = make_prediction(title="Will the castle fall?")
        with pytest.raises(ValidationError) as excinfo:
            prediction_engine.submit_pick(
                prediction.id, other.options[0].id, alice.id, now=now
            )
        assert excinfo.value.code == "invalid_option"
        assert PredictionPick.query.count() == 0

    def test_past_lock_time(self, prediction, alice, now):
        yes, _ = _options(prediction)
        with pytest.raises(StateConflictError) as excinfo:
            prediction_engine.submit_pick(
                prediction.id, yes.id, alice.id, now=now + timedelta(hours=12)
            )
        assert excinfo.value.code == "prediction_locked"

    def test_locked_state(self, prediction, alice, moderator, now):
        yes, _ = _options(prediction)
        prediction_engine.lock_prediction(prediction.id, actor=moderator)

        with pytest.raises(StateConflictError) as excinfo:
            prediction_engine.submit_pick(prediction.id, yes.id, alice.id, now=now)
        assert excinfo.value.code == "prediction_not_open"

    def test_unknown_prediction(self, alice, now):
        with pytest.raises(NotFoundError):
            prediction_engine.submit_pick(12345, 1, alice.id, now=now)

    def test_malformed_client_date(self, prediction, alice, now):
        yes, _ = _options(prediction)
        with pytest.raises(ValidationError):
            prediction_engine.submit_pick(
                prediction.id, yes.id, alice.id, client_local_date="05/03/2025", now=now
            )

    def test_pick_after_concurrent_void(self, prediction, alice, now):
        yes, _ = _options(prediction)
        # Voided elsewhere while this session still holds it as open
        _set_state(prediction, STATE_VOID)

        with pytest.raises(StateConflictError) as excinfo:
            prediction_engine.submit_pick(prediction.id, yes.id, alice.id, now=now)

        assert excinfo.value.code == "prediction_not_open"
        assert PredictionPick.query.count() == 0

    def test_state_change_after_checks_discards_pick(self, prediction, alice, now, monkeypatch):
        yes, no = _options(prediction)
        check_pick = prediction_engine._check_pick

        def check_then_lock(*args, **kwargs):
            option = check_pick(*args, **kwargs)
            _set_state(prediction, STATE_LOCKED)
            return option

        monkeypatch.setattr(prediction_engine, "_check_pick", check_then_lock)

        with pytest.raises(StateConflictError) as excinfo:
            prediction_engine.submit_pick(prediction.id, yes.id, alice.id, now=now)

        assert excinfo.value.code == "prediction_not_open"
        assert PredictionPick.query.count() == 0
        assert PredictionOptionStats.counts_for(prediction.id) == {yes.id: 0, no.id: 0}


class TestResolve:
    def test_correct_pick_paid_through_ledger(self, prediction, alice, moderator, seed_counts, now):
        _pick_worth_90(prediction, alice, seed_counts, now)
        yes, _ = _options(prediction)

        result = prediction_engine.resolve_prediction(
            prediction.id, yes.id, moderator, now=now + timedelta(hours=13)
        )

        assert result == {
            "prediction_id": prediction.id,
            "total_picks": 1,
            "correct_picks": 1,
            "points_awarded": 90,
        }
        assert prediction.state == STATE_RESOLVED
        assert prediction.outcome_option_id == yes.id

        entries = _ledger(alice)
        assert [(e.points, e.reason) for e in entries] == [(90, REASON_PICK_CORRECT)]

        stats = UserStats.query.filter_by(user_id=alice.id).one()
        assert stats.points_balance == 90
        assert stats.lifetime_points == 90
        assert stats.correct_picks == 1
        assert stats.total_picks == 1
        assert stats.accuracy == 1.0

    def test_incorrect_pick_earns_nothing(self, prediction, alice, moderator, now):
        yes, no = _options(prediction)
        prediction_engine.submit_pick(prediction.id, yes.id, alice.id, now=now)
        result = prediction_engine.resolve_prediction(prediction.id, no.id, moderator, now=now)

        assert result["correct_picks"] == 0
        assert result["points_awarded"] == 0
        assert _ledger(alice) == []
        stats = UserStats.query.filter_by(user_id=alice.id).one()
        assert stats.accuracy == 0.0
        assert stats.points_balance == 0

    def test_same_outcome_twice_is_a_no_op(self, prediction, alice, moderator, seed_counts, now):
        _pick_worth_90(prediction, alice, seed_counts, now)
        yes, _ = _options(prediction)

        prediction_engine.resolve_prediction(prediction.id, yes.id, moderator, now=now)
        again = prediction_engine.resolve_prediction(prediction.id, yes.id, moderator, now=now)

        assert again["already_resolved"] is True
        assert again["points_awarded"] == 90
        assert len(_ledger(alice)) == 1
        assert UserStats.query.filter_by(user_id=alice.id).one().points_balance == 90

    def test_correction_compensates_previous_payout(
        self, prediction, alice, bob, moderator, seed_counts, now
    ):
        _pick_worth_90(prediction, alice, seed_counts, now)
        yes, no = _options(prediction)
        bob_pick = prediction_engine.submit_pick(
            prediction.id, no.id, bob.id, now=now + timedelta(hours=9)
        )

        prediction_engine.resolve_prediction(prediction.id, yes.id, moderator, now=now)
        result = prediction_engine.resolve_prediction(prediction.id, no.id, moderator, now=now)

        assert result["correct_picks"] == 1
        assert prediction.outcome_option_id == no.id

        assert [(e.points, e.reason) for e in _ledger(alice)] == [
            (90, REASON_PICK_CORRECT),
            (-90, REASON_RESOLUTION_CORRECTION),
        ]
        assert [(e.points, e.reason) for e in _ledger(bob)] == [
            (bob_pick["potential_points"], REASON_PICK_CORRECT),
        ]

        alice_stats = UserStats.query.filter_by(user_id=alice.id).one()
        assert alice_stats.points_balance == 0
        assert alice_stats.lifetime_points == 0
        assert alice_stats.correct_picks == 0

        bob_stats = UserStats.query.filter_by(user_id=bob.id).one()
        assert bob_stats.points_balance == bob_pick["potential_points"]
        assert bob_stats.correct_picks == 1

        corrections = AuditLog.query.filter_by(action="resolve_prediction").count()
        assert corrections == 2

    def test_flip_back_restores_payout(self, prediction, alice, moderator, seed_counts, now):
        _pick_worth_90(prediction, alice, seed_counts, now)
        yes, no = _options(prediction)

        for option in (yes, no, yes):
            prediction_engine.resolve_prediction(prediction.id, option.id, moderator, now=now)

        assert PointsLedgerEntry.balance_for(alice.id) == 90
        assert PointsLedgerEntry.paid_for_pick(
            PredictionPick.query.filter_by(user_id=alice.id).one().id
        ) == 90
        stats = UserStats.query.filter_by(user_id=alice.id).one()
        assert stats.points_balance == 90
        assert stats.lifetime_points == 90

    def test_requires_moderator(self, prediction, alice):
        yes, _ = _options(prediction)
        with pytest.raises(AuthorizationError):
            prediction_engine.resolve_prediction(prediction.id, yes.id, alice)

    def test_winning_option_must_belong(self, prediction, make_prediction, moderator):
        other = make_prediction(title="Another question?")
        with pytest.raises(ValidationError):
            prediction_engine.resolve_prediction(prediction.id, other.options[0].id, moderator)
        assert prediction.state == "open"

    def test_stores_evidence(self, prediction, moderator):
        yes, _ = _options(prediction)
        prediction_engine.resolve_prediction(
            prediction.id,
            yes.id,
            moderator,
            evidence=[{"source_type": "RECAP", "url": "https://example.com/recap"}],
            resolver_type="assisted",
            confidence=0.9,
        )

        view = prediction_engine.get_prediction_view(prediction.id)
        assert view["resolver_type"] == "assisted"
        assert view["confidence"] == 0.9
        assert [o["is_outcome"] for o in view["options"]] == [True, False]

    def test_rejects_unknown_evidence_source(self, prediction, moderator):
        yes, _ = _options(prediction)
        with pytest.raises(ValidationError):
            prediction_engine.resolve_prediction(
                prediction.id, yes.id, moderator, evidence=[{"source_type": "RUMOR"}]
            )

    def test_void_prediction_cannot_be_resolved(self, prediction, moderator):
        yes, _ = _options(prediction)
        prediction_engine.void_prediction(prediction.id, moderator)

        with pytest.raises(StateConflictError):
            prediction_engine.resolve_prediction(prediction.id, yes.id, moderator)


class TestVoid:
    def test_refunds_half_the_potential(self, prediction, alice, moderator, seed_counts, now):
        _pick_worth_90(prediction, alice, seed_counts, now)

        result = prediction_engine.void_prediction(prediction.id, moderator, reason="Episode delayed")

        assert result["state"] == STATE_VOID
        assert result["refunded_picks"] == 1
        assert result["points_refunded"] == 45
        assert [(e.points, e.reason) for e in _ledger(alice)] == [(45, REASON_REFUND)]

        stats = UserStats.query.filter_by(user_id=alice.id).one()
        assert stats.points_balance == 45
        assert stats.lifetime_points == 45

        audit = AuditLog.query.filter_by(action="void_prediction").one()
        assert audit.details["reason"] == "Episode delayed"

    def test_second_void_refunds_nothing(self, prediction, alice, moderator, seed_counts, now):
        _pick_worth_90(prediction, alice, seed_counts, now)
        prediction_engine.void_prediction(prediction.id, moderator)

        again = prediction_engine.void_prediction(prediction.id, moderator)

        assert again["already_void"] is True
        assert len(_ledger(alice, REASON_REFUND)) == 1

    def test_resolved_prediction_cannot_be_voided(self, prediction, moderator):
        yes, _ = _options(prediction)
        prediction_engine.resolve_prediction(prediction.id, yes.id, moderator)

        with pytest.raises(StateConflictError):
            prediction_engine.void_prediction(prediction.id, moderator)

    def test_requires_moderator(self, prediction, alice):
        with pytest.raises(AuthorizationError):
            prediction_engine.void_prediction(prediction.id, alice)


class TestLock:
    def test_manual_lock_is_idempotent(self, prediction, moderator):
        first = prediction_engine.lock_prediction(prediction.id, actor=moderator)
        second = prediction_engine.lock_prediction(prediction.id, actor=moderator)

        assert first == {"prediction_id": prediction.id, "state": STATE_LOCKED, "changed": True}
        assert second["changed"] is False

    def test_lock_after_resolution_is_a_no_op(self, prediction, moderator):
        yes, _ = _options(prediction)
        prediction_engine.resolve_prediction(prediction.id, yes.id, moderator)

        result = prediction_engine.lock_prediction(prediction.id, actor=moderator)
        assert result["state"] == STATE_RESOLVED
        assert result["changed"] is False

    def test_requires_moderator(self, prediction, alice):
        with pytest.raises(AuthorizationError):
            prediction_engine.lock_prediction(prediction.id, actor=alice)

    def test_lock_sees_concurrent_void(self, prediction, moderator):
        _set_state(prediction, STATE_VOID)

        result = prediction_engine.lock_prediction(prediction.id, actor=moderator)
        assert result == {"prediction_id": prediction.id, "state": STATE_VOID, "changed": False}

    def test_sweep_locks_only_due_predictions(self, make_prediction, now):
        due = make_prediction(title="Locks at air time?")
        later = make_prediction(title="Locks tomorrow?", lock_at=now + timedelta(days=2))

        assert prediction_engine.lock_due_predictions(now=now) == 0
        assert prediction_engine.lock_due_predictions(now=now + timedelta(hours=12)) == 1
        assert due.state == STATE_LOCKED
        assert later.state == "open"


class TestOptionStatsReconciliation:
    def test_recount_fixes_drift(self, prediction, alice, bob, now):
        yes, no = _options(prediction)
        prediction_engine.submit_pick(prediction.id, yes.id, alice.id, now=now)
        prediction_engine.submit_pick(prediction.id, no.id, bob.id, now=now)

        row = PredictionOptionStats.query.filter_by(option_id=yes.id).one()
        row.pick_count = 17
        db.session.commit()

        assert PredictionOptionStats.recount(prediction.id) == 1
        db.session.commit()

        assert PredictionOptionStats.counts_for(prediction.id) == {yes.id: 1, no.id: 1}
        assert PredictionOptionStats.recount(prediction.id) == 0


class TestViews:
    def test_prediction_view_includes_viewer_pick(self, prediction, alice, bob, now):
        yes, _ = _options(prediction)
        prediction_engine.submit_pick(prediction.id, yes.id, alice.id, now=now)

        view = prediction_engine.get_prediction_view(prediction.id, viewer=alice)
        assert view["total_picks"] == 1
        assert view["options"][0]["percentage"] == 100.0
        assert view["viewer_pick"]["option_id"] == yes.id
        assert view["viewer_pick"]["is_correct"] is None

        assert prediction_engine.get_prediction_view(prediction.id, viewer=bob)["viewer_pick"] is None

    def test_hidden_prediction_only_for_moderators(self, prediction, alice, moderator):
        prediction.is_hidden = True
        db.session.commit()

        with pytest.raises(NotFoundError):
            prediction_engine.get_prediction_view(prediction.id, viewer=alice)
        assert prediction_engine.get_prediction_view(prediction.id, viewer=moderator)["id"] == prediction.id
        assert prediction_engine.list_predictions() == []

    def test_list_filters_by_state(self, make_prediction, moderator):
        first = make_prediction(title="First question?")
        make_prediction(title="Second question?")
        prediction_engine.lock_prediction(first.id, actor=moderator)

        assert [p["id"] for p in prediction_engine.list_predictions(state="locked")] == [first.id]
        assert len(prediction_engine.list_predictions(state="open")) == 1


class TestPickHistory:
    def _three_picks(self, make_prediction, alice, moderator, now):
        won = make_prediction(title="Will the gate hold?")
        lost = make_prediction(title="Will the king return?")
        open_ = make_prediction(title="Will the bridge burn?")
        for hours, prediction in enumerate([won, lost, open_]):
            yes, _ = _options(prediction)
            prediction_engine.submit_pick(
                prediction.id, yes.id, alice.id, now=now + timedelta(hours=hours)
            )

        prediction_engine.resolve_prediction(won.id, won.options[0].id, moderator)
        prediction_engine.resolve_prediction(lost.id, lost.options[1].id, moderator)
        return won, lost, open_

    def test_newest_first_with_outcomes(self, make_prediction, alice, moderator, now):
        won, lost, open_ = self._three_picks(make_prediction, alice, moderator, now)

        history = prediction_engine.list_user_picks(alice.id)

        assert [h["prediction_id"] for h in history] == [open_.id, lost.id, won.id]
        assert [h["status"] for h in history] == ["pending", "incorrect", "correct"]

        pending, incorrect, correct = history
        assert pending["winning_option"] is None
        assert pending["picked_option"] == "Yes"
        assert incorrect["winning_option"] == "No"
        assert incorrect["earned_points"] == 0
        assert correct["earned_points"] == correct["potential_points"] == 70
        assert correct["show_slug"] == "the-long-night"
        assert correct["episode_title"] == "Winter Arrives"
        assert (correct["season_number"], correct["episode_number"]) == (1, 1)

    def test_filters(self, make_prediction, alice, bob, moderator, show, now):
        won, _, open_ = self._three_picks(make_prediction, alice, moderator, now)

        def ids(**filters):
            return [h["prediction_id"] for h in prediction_engine.list_user_picks(alice.id, **filters)]

        assert ids(status="correct") == [won.id]
        assert ids(status="pending") == [open_.id]
        assert len(ids(show_id=show.id)) == 3
        assert ids(show_id=show.id + 1) == []
        assert len(ids(limit=2)) == 2
        assert prediction_engine.list_user_picks(bob.id) == []

    def test_rejects_unknown_status_and_user(self, alice):
        with pytest.raises(ValidationError):
            prediction_engine.list_user_picks(alice.id, status="won")
        with pytest.raises(NotFoundError):
            prediction_engine.list_user_picks(9999)


class TestHotPredictions:
    def test_ranks_by_pick_rate_within_a_day(
        self, make_prediction, alice, bob, moderator, now
    ):
        quiet = make_prediction(title="Locks soon, no picks?", lock_at=now + timedelta(hours=2))
        busy = make_prediction(title="Locks tonight?", lock_at=now + timedelta(hours=10))
        make_prediction(title="Locks next week?", lock_at=now + timedelta(hours=30))
        closed = make_prediction(title="Already locked?", lock_at=now + timedelta(hours=5))
        prediction_engine.lock_prediction(closed.id, actor=moderator)

        yes, no = _options(busy)
        prediction_engine.submit_pick(busy.id, yes.id, alice.id, now=now)
        prediction_engine.submit_pick(busy.id, no.id, bob.id, now=now)

        hot = prediction_engine.list_hot_predictions(now=now)

        assert [p["id"] for p in hot] == [busy.id, quiet.id]
        assert hot[0]["total_picks"] == 2
        assert hot[0]["hours_left"] == 10.0
        # 2 picks over the 14 hours so far, times 6 capped hours
        assert hot[0]["urgency_score"] == 0.8571
        assert hot[0]["show_title"] == "The Long Night"
        assert hot[1]["urgency_score"] == 0.0

    def test_limit_and_hidden(self, make_prediction, now):
        first = make_prediction(title="First?", lock_at=now + timedelta(hours=3))
        hidden = make_prediction(title="Hidden?", lock_at=now + timedelta(hours=4))
        make_prediction(title="Third?", lock_at=now + timedelta(hours=6))
        hidden.is_hidden = True
        db.session.commit()

        hot = prediction_engine.list_hot_predictions(limit=1, now=now)
        assert [p["id"] for p in hot] == [first.id]
        assert hidden.id not in [p["id"] for p in prediction_engine.list_hot_predictions(now=now)]
