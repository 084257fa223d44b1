import functools
import json
import threading
from datetime import timedelta
from unittest import mock

from django.contrib.auth.models import User
from django.core.cache import cache
from django.db import OperationalError, connection
from django.test import Client, SimpleTestCase, TestCase, TransactionTestCase, override_settings
from django.urls import reverse
from django.utils import timezone

from teams.models import Team
from tournaments.models import ContestParticipant, Match, MatchStatus, Tournament
from . import eligibility, ledger, leaderboard, lifecycle, votes
from .clock import FrozenClock, seconds_until
from .exceptions import (
    EngineError, InvalidTeam, InvalidTransition, MatchLocked, NotFound,
    StateConflict, Unavailable, retry_transient
)
from .models import PointsLedgerEntry, Prediction, PredictionType


def create_user(username, verified=True, joined=None):
    user = User.objects.create_user(username=username, password='pass')
    user.profile.is_verified = verified
    user.profile.save()
    if joined is not None:
        User.objects.filter(pk=user.pk).update(date_joined=joined)
        user.refresh_from_db()
    return user


class EngineTestCase(TestCase):
    """Two teams, one tournament and one upcoming match starting in an hour."""

    @classmethod
    def setUpTestData(cls):
        cls.now = timezone.now()
        cls.team_a = Team.objects.create(name='Mumbai')
        cls.team_b = Team.objects.create(name='Chennai')
        cls.team_c = Team.objects.create(name='Kolkata')
        cls.tournament = Tournament.objects.create(name='Premier League')
        cls.tournament.participants.add(cls.team_a, cls.team_b)
        cls.match = cls.create_match(cls.now + timedelta(hours=1))
        cls.user = create_user('user', joined=cls.now - timedelta(days=30))

    @classmethod
    def create_match(cls, match_date, tournament=None, status=MatchStatus.UPCOMING, **kwargs):
        return Match.objects.create(
            tournament=tournament or cls.tournament,
            team1=cls.team_a,
            team2=cls.team_b,
            location='Wankhede',
            match_date=match_date,
            status=status,
            **kwargs
        )

    def setUp(self):
        cache.clear()
        self.clock = FrozenClock(self.now)


class ScoringRuleTests(SimpleTestCase):

    def test_completed_adds_one_point_per_correct_pick(self):
        self.assertEqual(ledger.evaluate(MatchStatus.COMPLETED, 1, 2, 1, 2), (2, True, True))
        self.assertEqual(ledger.evaluate(MatchStatus.COMPLETED, 1, 2, 1, 1), (1, True, False))
        self.assertEqual(ledger.evaluate(MatchStatus.COMPLETED, 1, 2, 2, 2), (1, False, True))
        self.assertEqual(ledger.evaluate(MatchStatus.COMPLETED, 1, 2, 2, 1), (0, False, False))

    def test_completed_points_stay_within_zero_and_two(self):
        for toss_pick in (None, 1, 2):
            for match_pick in (None, 1, 2):
                points, toss_ok, match_ok = ledger.evaluate(MatchStatus.COMPLETED, 1, 2, toss_pick, match_pick)
                self.assertIn(points, (0, 1, 2))
                self.assertEqual(points, int(toss_ok) + int(match_ok))

    def test_missing_pick_counts_as_wrong(self):
        self.assertEqual(ledger.evaluate(MatchStatus.COMPLETED, 1, 2, None, 2), (1, False, True))
        self.assertEqual(ledger.evaluate(MatchStatus.TIE, 1, None, None, 2), (0, False, None))

    def test_tie_scores_only_the_toss(self):
        self.assertEqual(ledger.evaluate(MatchStatus.TIE, 1, None, 1, 2), (1, True, None))

    def test_void_scores_nothing(self):
        self.assertEqual(ledger.evaluate(MatchStatus.VOID, None, None, 1, 2), (0, None, None))

    def test_open_match_cannot_be_scored(self):
        with self.assertRaises(InvalidTransition):
            ledger.evaluate(MatchStatus.ONGOING, None, None, 1, 2)


class SubmitTests(EngineTestCase):

    def test_submit_creates_single_prediction(self):
        prediction = ledger.submit(self.user.pk, self.match.pk, self.team_a.pk, self.team_b.pk)
        self.assertEqual(prediction.predicted_toss_winner_id, self.team_a.pk)
        self.assertEqual(prediction.predicted_match_winner_id, self.team_b.pk)
        self.assertIsNone(prediction.points_earned)
        self.assertEqual(Prediction.objects.filter(user=self.user, match=self.match).count(), 1)

    def test_picks_are_kept_across_calls(self):
        ledger.submit(self.user.pk, self.match.pk, predicted_toss_winner_id=self.team_a.pk)
        ledger.submit(self.user.pk, self.match.pk, predicted_match_winner_id=self.team_b.pk)
        ledger.submit(self.user.pk, self.match.pk, predicted_toss_winner_id=self.team_b.pk)

        prediction = Prediction.objects.get(user=self.user, match=self.match)
        self.assertEqual(prediction.predicted_toss_winner_id, self.team_b.pk)
        self.assertEqual(prediction.predicted_match_winner_id, self.team_b.pk)
        self.assertEqual(Prediction.objects.count(), 1)

    def test_team_outside_match_is_rejected(self):
        with self.assertRaises(InvalidTeam):
            ledger.submit(self.user.pk, self.match.pk, self.team_c.pk, self.team_a.pk)
        self.assertFalse(Prediction.objects.exists())

    def test_empty_submission_is_rejected(self):
        with self.assertRaises(InvalidTeam):
            ledger.submit(self.user.pk, self.match.pk)

    def test_unknown_match_or_user(self):
        with self.assertRaises(NotFound):
            ledger.submit(self.user.pk, 9999, self.team_a.pk)
        with self.assertRaises(NotFound):
            ledger.submit(9999, self.match.pk, self.team_a.pk)

    def test_submit_after_start_is_rejected(self):
        ledger.submit(self.user.pk, self.match.pk, self.team_a.pk, self.team_b.pk)
        lifecycle.transition(self.match.pk, MatchStatus.ONGOING, clock=self.clock)

        with self.assertRaises(MatchLocked) as ctx:
            ledger.submit(self.user.pk, self.match.pk, self.team_b.pk, self.team_a.pk)
        self.assertEqual(ctx.exception.status, MatchStatus.ONGOING)

        prediction = Prediction.objects.get(user=self.user, match=self.match)
        self.assertEqual(prediction.predicted_toss_winner_id, self.team_a.pk)
        self.assertIsNotNone(prediction.locked_at)

    def test_submit_rejected_for_every_closed_status(self):
        for status in (MatchStatus.ONGOING, MatchStatus.COMPLETED, MatchStatus.TIE, MatchStatus.VOID):
            match = self.create_match(self.now - timedelta(hours=1), status=status)
            with self.assertRaises(MatchLocked):
                ledger.submit(self.user.pk, match.pk, self.team_a.pk)


class LockAndScoreTests(EngineTestCase):

    def setUp(self):
        super().setUp()
        self.other = create_user('other')
        ledger.submit(self.user.pk, self.match.pk, self.team_a.pk, self.team_b.pk)
        ledger.submit(self.other.pk, self.match.pk, predicted_match_winner_id=self.team_a.pk)

    def test_lock_is_idempotent(self):
        Match.objects.filter(pk=self.match.pk).update(status=MatchStatus.ONGOING)
        self.assertEqual(ledger.lock(self.match.pk, clock=self.clock), 2)
        self.assertEqual(ledger.lock(self.match.pk, clock=self.clock), 0)
        self.assertFalse(Prediction.objects.filter(locked_at__isnull=True).exists())

    def test_lock_refuses_open_match(self):
        with self.assertRaises(InvalidTransition):
            ledger.lock(self.match.pk)

    def test_score_refuses_unfinished_match(self):
        Match.objects.filter(pk=self.match.pk).update(status=MatchStatus.ONGOING)
        with self.assertRaises(InvalidTransition):
            ledger.score(self.match.pk)

    def test_score_refuses_unlocked_predictions(self):
        Match.objects.filter(pk=self.match.pk).update(status=MatchStatus.VOID)
        with self.assertRaises(InvalidTransition):
            ledger.score(self.match.pk)

    def test_completed_match_scoring(self):
        lifecycle.transition(self.match.pk, MatchStatus.COMPLETED, self.team_a.pk, self.team_b.pk, clock=self.clock)

        mine = Prediction.objects.get(user=self.user)
        theirs = Prediction.objects.get(user=self.other)
        self.assertEqual(mine.points_earned, 2)
        self.assertTrue(mine.toss_correct)
        self.assertTrue(mine.match_correct)
        self.assertEqual(theirs.points_earned, 0)
        self.assertFalse(theirs.toss_correct)
        self.assertEqual(mine.scored_at, self.now)

    def test_rescoring_is_idempotent(self):
        lifecycle.transition(self.match.pk, MatchStatus.COMPLETED, self.team_a.pk, self.team_b.pk, clock=self.clock)
        first = dict(Prediction.objects.values_list('user_id', 'points_earned'))

        self.assertEqual(ledger.score(self.match.pk, clock=self.clock), 2)
        second = dict(Prediction.objects.values_list('user_id', 'points_earned'))

        self.assertEqual(first, second)
        self.assertEqual(PointsLedgerEntry.objects.filter(match=self.match).count(), 2)
        self.assertEqual(
            set(PointsLedgerEntry.objects.values_list('reason', flat=True)),
            {ledger.TOSS_REASON, ledger.MATCH_REASON},
        )

    def test_tie_scores_toss_only(self):
        lifecycle.transition(self.match.pk, MatchStatus.TIE, toss_winner_id=self.team_a.pk, clock=self.clock)

        mine = Prediction.objects.get(user=self.user)
        self.assertEqual(mine.points_earned, 1)
        self.assertIsNone(mine.match_correct)
        self.assertEqual(Prediction.objects.get(user=self.other).points_earned, 0)

    def test_void_scores_zero(self):
        lifecycle.transition(self.match.pk, MatchStatus.VOID, clock=self.clock)

        for prediction in Prediction.objects.all():
            self.assertEqual(prediction.points_earned, 0)
            self.assertIsNotNone(prediction.scored_at)
        self.assertFalse(PointsLedgerEntry.objects.exists())


class LifecycleTests(EngineTestCase):

    def test_prediction_round_trip(self):
        """Submit, auto-start, lock out late edits, then score the result."""
        clock = FrozenClock(self.match.match_date - timedelta(minutes=30))
        ledger.submit(self.user.pk, self.match.pk, self.team_a.pk, self.team_b.pk)

        self.assertEqual(lifecycle.advance_started_matches(clock=clock), [])
        clock.advance(hours=1)
        self.assertEqual(lifecycle.advance_started_matches(clock=clock), [self.match.pk])
        self.assertEqual(Match.objects.get(pk=self.match.pk).status, MatchStatus.ONGOING)

        with self.assertRaises(MatchLocked):
            ledger.submit(self.user.pk, self.match.pk, self.team_b.pk)

        lifecycle.transition(self.match.pk, MatchStatus.COMPLETED, self.team_a.pk, self.team_b.pk, clock=clock)
        self.assertEqual(Prediction.objects.get(user=self.user).points_earned, 2)

    def test_void_after_matching_picks_earns_nothing(self):
        ledger.submit(self.user.pk, self.match.pk, self.team_a.pk, self.team_b.pk)
        lifecycle.transition(self.match.pk, MatchStatus.ONGOING, clock=self.clock)
        lifecycle.transition(self.match.pk, MatchStatus.VOID, clock=self.clock)
        self.assertEqual(Prediction.objects.get(user=self.user).points_earned, 0)

    def test_auto_start_is_a_no_op_when_repeated(self):
        self.clock.set(self.match.match_date)
        self.assertTrue(lifecycle.advance_if_started(self.match.pk, clock=self.clock))
        self.assertFalse(lifecycle.advance_if_started(self.match.pk, clock=self.clock))
        self.assertEqual(lifecycle.advance_started_matches(clock=self.clock), [])

    def test_auto_start_waits_for_start_time(self):
        self.assertFalse(lifecycle.advance_if_started(self.match.pk, clock=self.clock))
        self.assertEqual(Match.objects.get(pk=self.match.pk).status, MatchStatus.UPCOMING)

    def test_auto_start_skips_matches_moved_by_admin(self):
        lifecycle.transition(self.match.pk, MatchStatus.VOID, clock=self.clock)
        self.clock.advance(hours=2)
        self.assertFalse(lifecycle.advance_if_started(self.match.pk, clock=self.clock))
        self.assertEqual(Match.objects.get(pk=self.match.pk).status, MatchStatus.VOID)

    def test_sweep_can_be_cancelled(self):
        self.create_match(self.now - timedelta(minutes=5))
        self.clock.advance(hours=2)
        self.assertEqual(lifecycle.advance_started_matches(clock=self.clock, should_continue=lambda: False), [])
        self.assertEqual(Match.objects.filter(status=MatchStatus.UPCOMING).count(), 2)

    def test_terminal_states_are_absorbing(self):
        lifecycle.transition(self.match.pk, MatchStatus.VOID, clock=self.clock)
        for target in (MatchStatus.ONGOING, MatchStatus.COMPLETED, MatchStatus.VOID):
            with self.assertRaises(StateConflict):
                lifecycle.transition(self.match.pk, target, self.team_a.pk, self.team_b.pk)
        self.assertTrue(issubclass(StateConflict, InvalidTransition))

    def test_completed_needs_both_winners(self):
        with self.assertRaises(InvalidTransition):
            lifecycle.transition(self.match.pk, MatchStatus.COMPLETED, toss_winner_id=self.team_a.pk)
        self.assertEqual(Match.objects.get(pk=self.match.pk).status, MatchStatus.UPCOMING)

    def test_tie_and_void_result_rules(self):
        with self.assertRaises(InvalidTransition):
            lifecycle.transition(self.match.pk, MatchStatus.TIE, self.team_a.pk, self.team_b.pk)
        with self.assertRaises(InvalidTransition):
            lifecycle.transition(self.match.pk, MatchStatus.TIE)
        with self.assertRaises(InvalidTransition):
            lifecycle.transition(self.match.pk, MatchStatus.VOID, toss_winner_id=self.team_a.pk)

    def test_winner_must_play_in_match(self):
        with self.assertRaises(InvalidTeam):
            lifecycle.transition(self.match.pk, MatchStatus.COMPLETED, self.team_c.pk, self.team_a.pk)

    def test_unknown_status_and_backwards_moves(self):
        with self.assertRaises(InvalidTransition):
            lifecycle.transition(self.match.pk, 'abandoned')
        lifecycle.transition(self.match.pk, MatchStatus.ONGOING, clock=self.clock)
        with self.assertRaises(InvalidTransition):
            lifecycle.transition(self.match.pk, MatchStatus.UPCOMING)
        with self.assertRaises(InvalidTransition):
            lifecycle.transition(self.match.pk, MatchStatus.ONGOING)

    def test_stale_expected_status_conflicts(self):
        lifecycle.transition(self.match.pk, MatchStatus.ONGOING, clock=self.clock)
        with self.assertRaises(StateConflict):
            lifecycle.transition(self.match.pk, MatchStatus.VOID, expected_status=MatchStatus.UPCOMING)
        self.assertEqual(Match.objects.get(pk=self.match.pk).status, MatchStatus.ONGOING)

    def test_unknown_match(self):
        with self.assertRaises(NotFound):
            lifecycle.transition(9999, MatchStatus.ONGOING)
        with self.assertRaises(NotFound):
            lifecycle.get_match_status(9999)

    def test_failed_scoring_keeps_previous_status(self):
        ledger.submit(self.user.pk, self.match.pk, self.team_a.pk, self.team_b.pk)
        lifecycle.transition(self.match.pk, MatchStatus.ONGOING, clock=self.clock)

        with mock.patch('predictions.lifecycle.ledger.score', side_effect=RuntimeError('boom')):
            with self.assertRaises(RuntimeError):
                lifecycle.transition(self.match.pk, MatchStatus.COMPLETED, self.team_a.pk, self.team_b.pk)

        match = Match.objects.get(pk=self.match.pk)
        self.assertEqual(match.status, MatchStatus.ONGOING)
        self.assertIsNone(match.match_winner_id)
        self.assertIsNone(Prediction.objects.get(user=self.user).points_earned)

        lifecycle.transition(self.match.pk, MatchStatus.COMPLETED, self.team_a.pk, self.team_b.pk, clock=self.clock)
        self.assertEqual(Prediction.objects.get(user=self.user).points_earned, 2)

    def test_admin_can_finish_straight_from_upcoming(self):
        ledger.submit(self.user.pk, self.match.pk, self.team_a.pk, self.team_b.pk)
        lifecycle.transition(
            self.match.pk, MatchStatus.COMPLETED, self.team_a.pk, self.team_b.pk,
            result={'team1_score': '180/4', 'team2_score': '175/9', 'result_summary': 'Mumbai won by 5 runs'},
            clock=self.clock,
        )
        match = Match.objects.get(pk=self.match.pk)
        self.assertEqual(match.team1_score, '180/4')
        self.assertEqual(match.result_summary, 'Mumbai won by 5 runs')
        prediction = Prediction.objects.get(user=self.user)
        self.assertIsNotNone(prediction.locked_at)
        self.assertEqual(prediction.points_earned, 2)

    def test_toss_can_be_recorded_at_start(self):
        lifecycle.transition(self.match.pk, MatchStatus.ONGOING, toss_winner_id=self.team_b.pk, clock=self.clock)
        self.assertEqual(Match.objects.get(pk=self.match.pk).toss_winner_id, self.team_b.pk)

    def test_match_status_reports_countdown(self):
        state = lifecycle.get_match_status(self.match.pk, clock=self.clock)
        self.assertEqual(state.status, MatchStatus.UPCOMING)
        self.assertEqual(state.seconds_until_start, 3600)
        self.assertTrue(state.accepting_predictions)

        self.clock.advance(hours=2)
        self.assertEqual(lifecycle.get_match_status(self.match.pk, clock=self.clock).seconds_until_start, 0)


class ClockTests(SimpleTestCase):

    def test_seconds_until(self):
        now = timezone.now()
        self.assertEqual(seconds_until(now + timedelta(minutes=2, seconds=30), now), 150)
        self.assertEqual(seconds_until(now - timedelta(seconds=1), now), 0)

    def test_frozen_clock_moves_only_when_told(self):
        start = timezone.now()
        clock = FrozenClock(start)
        self.assertEqual(clock.now(), start)
        clock.advance(days=1)
        self.assertEqual(clock.now(), start + timedelta(days=1))


class VoteTallyTests(EngineTestCase):

    def setUp(self):
        super().setUp()
        self.users = [create_user(f'voter{i}') for i in range(4)]
        ledger.submit(self.users[0].pk, self.match.pk, self.team_a.pk, self.team_a.pk)
        ledger.submit(self.users[1].pk, self.match.pk, self.team_a.pk, self.team_b.pk)
        ledger.submit(self.users[2].pk, self.match.pk, predicted_toss_winner_id=self.team_b.pk)
        ledger.submit(self.users[3].pk, self.match.pk, predicted_match_winner_id=self.team_a.pk)

    def test_counts_only_filled_picks(self):
        toss = votes.tally(self.match.pk, PredictionType.TOSS)
        self.assertEqual(toss.counts, {self.team_a.pk: 2, self.team_b.pk: 1})
        self.assertEqual(toss.total, 3)

        match = votes.tally(self.match.pk, 'match')
        self.assertEqual(match.counts, {self.team_a.pk: 2, self.team_b.pk: 1})
        self.assertTrue(match.is_open)

    def test_percentages(self):
        self.assertEqual(
            votes.tally(self.match.pk, 'toss').percentages(),
            {self.team_a.pk: 67, self.team_b.pk: 33},
        )
        empty = self.create_match(self.now + timedelta(days=1))
        self.assertEqual(votes.tally(empty.pk, 'toss').percentages(), {self.team_a.pk: 0, self.team_b.pk: 0})

    def test_tally_stays_open_while_ongoing(self):
        lifecycle.transition(self.match.pk, MatchStatus.ONGOING, clock=self.clock)
        self.assertEqual(votes.tally(self.match.pk, 'toss').total, 3)

    def test_finished_match_has_no_live_tally(self):
        lifecycle.transition(self.match.pk, MatchStatus.VOID, clock=self.clock)
        result = votes.tally(self.match.pk, 'match')
        self.assertFalse(result.is_open)
        self.assertEqual(result.total, 0)

    def test_bad_arguments(self):
        with self.assertRaises(EngineError):
            votes.tally(self.match.pk, 'runs')
        with self.assertRaises(NotFound):
            votes.tally(9999, 'toss')


class EligibilityTests(EngineTestCase):

    @classmethod
    def setUpTestData(cls):
        super().setUpTestData()
        cls.contest = Tournament.objects.create(name='Fantasy Cup', is_contest=True)
        cls.contest_match = cls.create_match(cls.now + timedelta(hours=2), tournament=cls.contest)
        cls.member = create_user('member')
        cls.outsider = create_user('outsider')
        cls.unverified = create_user('unverified', verified=False)
        ContestParticipant.objects.create(tournament=cls.contest, user=cls.member)

    def counted_users(self, match):
        rows = eligibility.eligible_predictions(Prediction.objects.filter(match=match))
        return set(rows.values_list('user__username', flat=True))

    def test_only_verified_users_count(self):
        for user in (self.outsider, self.unverified):
            ledger.submit(user.pk, self.match.pk, self.team_a.pk)
        self.assertEqual(self.counted_users(self.match), {'outsider'})

    def test_contest_counts_only_participants(self):
        """Anyone may predict a contest match; only participants are counted."""
        for user in (self.member, self.outsider):
            ledger.submit(user.pk, self.contest_match.pk, self.team_a.pk)
        self.assertEqual(Prediction.objects.filter(match=self.contest_match).count(), 2)
        self.assertEqual(self.counted_users(self.contest_match), {'member'})

    def test_leaving_contest_stops_counting(self):
        ledger.submit(self.member.pk, self.contest_match.pk, self.team_a.pk)
        ContestParticipant.objects.filter(user=self.member).delete()
        self.assertEqual(self.counted_users(self.contest_match), set())


class LeaderboardTests(EngineTestCase):

    @classmethod
    def setUpTestData(cls):
        super().setUpTestData()
        cls.recent = cls.create_match(cls.now - timedelta(days=2), status=MatchStatus.COMPLETED,
                                      toss_winner=cls.team_a, match_winner=cls.team_b)
        cls.older = cls.create_match(cls.now - timedelta(days=20), status=MatchStatus.COMPLETED,
                                     toss_winner=cls.team_a, match_winner=cls.team_a)
        cls.ancient = cls.create_match(cls.now - timedelta(days=90), status=MatchStatus.TIE,
                                       toss_winner=cls.team_b)

    @classmethod
    def scored(cls, user, match, points, correct, match_ok=None):
        """A stored, already scored prediction."""
        return Prediction.objects.create(
            user=user, match=match, points_earned=points,
            toss_correct=correct > 0, match_correct=match_ok if match_ok is not None else correct > 1,
            locked_at=cls.now, scored_at=cls.now,
        )

    def joined(self, days_ago):
        return self.now - timedelta(days=days_ago)

    def test_rank_orders_by_points_then_correct_picks(self):
        """Two users tied on 5 points are split by 4 against 3 correct picks."""
        first = create_user('four_correct', joined=self.joined(1))
        second = create_user('three_correct', joined=self.joined(10))
        third = create_user('three_points', joined=self.joined(20))
        # Stored values are folded as they are.
        Prediction.objects.create(user=first, match=self.recent, points_earned=5,
                                  toss_correct=True, match_correct=True, locked_at=self.now, scored_at=self.now)
        Prediction.objects.create(user=first, match=self.older, points_earned=0,
                                  toss_correct=True, match_correct=True, locked_at=self.now, scored_at=self.now)
        Prediction.objects.create(user=second, match=self.recent, points_earned=5,
                                  toss_correct=True, match_correct=True, locked_at=self.now, scored_at=self.now)
        Prediction.objects.create(user=second, match=self.older, points_earned=0,
                                  toss_correct=True, match_correct=False, locked_at=self.now, scored_at=self.now)
        self.scored(third, self.recent, 3, 2)

        page = leaderboard.rank('monthly', clock=self.clock)
        self.assertEqual([e.username for e in page.entries], ['four_correct', 'three_correct', 'three_points'])
        self.assertEqual([e.rank for e in page.entries], [1, 2, 3])
        self.assertEqual(page.entries[0].correct_predictions, 4)
        self.assertEqual(page.entries[1].correct_predictions, 3)

    def test_equal_records_resolve_by_account_age_then_id(self):
        newer = create_user('newer', joined=self.joined(1))
        older = create_user('older', joined=self.joined(5))
        same_a = create_user('same_a', joined=self.joined(3))
        same_b = create_user('same_b', joined=self.joined(3))
        for user in (newer, older, same_a, same_b):
            self.scored(user, self.recent, 1, 1)

        names = [e.username for e in leaderboard.rank(clock=self.clock).entries]
        self.assertEqual(names, ['older', 'same_a', 'same_b', 'newer'])

    def test_unverified_users_are_never_ranked(self):
        hidden = create_user('hidden', verified=False)
        shown = create_user('shown')
        self.scored(hidden, self.recent, 2, 2)
        self.scored(shown, self.recent, 0, 0)

        page = leaderboard.rank(clock=self.clock)
        self.assertEqual([e.username for e in page.entries], ['shown'])
        self.assertIsNone(leaderboard.rank(viewer_id=hidden.pk, clock=self.clock).viewer)

    def test_timeframe_windows(self):
        self.scored(self.user, self.recent, 2, 2)
        self.scored(self.user, self.older, 1, 1)
        self.scored(self.user, self.ancient, 1, 1)

        points = {
            timeframe: leaderboard.rank(timeframe, clock=self.clock).entries[0].points
            for timeframe in ('weekly', 'monthly', 'all-time')
        }
        self.assertEqual(points, {'weekly': 2, 'monthly': 3, 'all-time': 4})

    def test_rolling_window_moves_with_the_clock(self):
        self.scored(self.user, self.recent, 2, 2)
        self.assertEqual(leaderboard.rank('weekly', clock=self.clock).total, 1)

        self.clock.advance(days=10)
        self.assertEqual(leaderboard.rank('weekly', clock=self.clock).total, 0)
        self.assertEqual(leaderboard.rank('monthly', clock=self.clock).total, 1)

    def test_unknown_timeframe_or_tournament(self):
        with self.assertRaises(EngineError):
            leaderboard.rank('yearly')
        with self.assertRaises(NotFound):
            leaderboard.rank(tournament_id=9999)

    def test_unscored_predictions_are_ignored(self):
        ledger.submit(self.user.pk, self.match.pk, self.team_a.pk, self.team_b.pk)
        self.assertEqual(leaderboard.rank(clock=self.clock).entries, [])

    def test_tournament_scope_and_contest_membership(self):
        contest = Tournament.objects.create(name='Fantasy Cup', is_contest=True)
        contest_match = self.create_match(self.now - timedelta(days=1), tournament=contest,
                                          status=MatchStatus.COMPLETED,
                                          toss_winner=self.team_a, match_winner=self.team_a)
        member = create_user('member')
        outsider = create_user('outsider')
        entry = ContestParticipant.objects.create(tournament=contest, user=member)
        self.scored(member, contest_match, 2, 2)
        self.scored(outsider, contest_match, 2, 2)
        self.scored(outsider, self.recent, 1, 1)

        scoped = leaderboard.rank(tournament_id=contest.pk, clock=self.clock)
        self.assertEqual([e.username for e in scoped.entries], ['member'])

        overall = {e.username: e.points for e in leaderboard.rank(clock=self.clock).entries}
        self.assertEqual(overall, {'member': 2, 'outsider': 1})

        league = leaderboard.rank(tournament_id=self.tournament.pk, clock=self.clock)
        self.assertEqual([e.username for e in league.entries], ['outsider'])

        entry.delete()
        self.assertEqual(leaderboard.rank(tournament_id=contest.pk, clock=self.clock).entries, [])

    @override_settings(LEADERBOARD_MAX_ENTRIES=3, LEADERBOARD_PAGE_SIZE=2)
    def test_pagination_cap_and_viewer_row(self):
        users = [create_user(f'player{i}', joined=self.joined(50 - i)) for i in range(5)]
        for points, user in zip((5, 4, 3, 2, 1), users):
            self.scored(user, self.recent, points, 0)

        first = leaderboard.rank(viewer_id=users[4].pk, clock=self.clock)
        self.assertEqual([e.rank for e in first.entries], [1, 2])
        self.assertEqual(first.total, 5)
        self.assertEqual(first.viewer.rank, 5)
        self.assertEqual(first.viewer.user_id, users[4].pk)

        second = leaderboard.rank(offset=2, viewer_id=users[0].pk, clock=self.clock)
        self.assertEqual([e.rank for e in second.entries], [3])
        self.assertEqual(second.viewer.rank, 1)

        on_page = leaderboard.rank(viewer_id=users[1].pk, clock=self.clock)
        self.assertIsNone(on_page.viewer)

        self.assertEqual(leaderboard.rank(offset=3, clock=self.clock).entries, [])

    def test_accuracy_counts_missing_picks_as_wrong(self):
        self.scored(self.user, self.recent, 1, 1, match_ok=False)
        Prediction.objects.create(user=self.user, match=self.ancient, points_earned=1,
                                  toss_correct=True, locked_at=self.now, scored_at=self.now)

        entry = leaderboard.rank(clock=self.clock).entries[0]
        self.assertEqual(entry.total_matches, 2)
        self.assertEqual(entry.correct_predictions, 2)
        self.assertEqual(entry.scoreable_picks, 3)
        self.assertEqual(entry.accuracy, 66.7)

    def test_standings_are_cached_until_scoring(self):
        ledger.submit(self.user.pk, self.match.pk, self.team_a.pk, self.team_b.pk)
        self.assertEqual(leaderboard.rank(clock=self.clock).entries, [])

        with self.captureOnCommitCallbacks(execute=True):
            lifecycle.transition(self.match.pk, MatchStatus.COMPLETED, self.team_a.pk, self.team_b.pk,
                                 clock=self.clock)

        entries = leaderboard.rank(clock=self.clock).entries
        self.assertEqual([(e.username, e.points) for e in entries], [('user', 2)])

    def test_cached_snapshot_is_served_until_invalidated(self):
        late = create_user('late')
        self.scored(self.user, self.recent, 2, 2)
        self.assertEqual(len(leaderboard.rank(clock=self.clock).entries), 1)

        Prediction.objects.create(user=late, match=self.older, points_earned=1,
                                  toss_correct=True, match_correct=False, locked_at=self.now, scored_at=self.now)
        self.assertEqual(len(leaderboard.rank(clock=self.clock).entries), 1)

        leaderboard.invalidate(reason='test')
        self.assertEqual(len(leaderboard.rank(clock=self.clock).entries), 2)

    def test_revoking_verification_updates_ranking(self):
        self.scored(self.user, self.recent, 2, 2)
        self.assertEqual(len(leaderboard.rank(clock=self.clock).entries), 1)

        self.user.profile.is_verified = False
        self.user.profile.save()
        self.assertEqual(leaderboard.rank(clock=self.clock).entries, [])

    def test_personal_stats_for_unranked_user(self):
        hidden = create_user('hidden', verified=False)
        self.scored(hidden, self.recent, 2, 2)
        self.scored(self.user, self.recent, 1, 1)

        stats = leaderboard.personal_stats(hidden.pk, clock=self.clock)
        self.assertIsNone(stats.rank)
        self.assertEqual(stats.points, 2)
        self.assertFalse(stats.is_verified)

        self.assertEqual(leaderboard.personal_stats(self.user.pk, clock=self.clock).rank, 1)

    def test_personal_stats_without_predictions(self):
        stats = leaderboard.personal_stats(self.user.pk, clock=self.clock)
        self.assertEqual((stats.points, stats.total_matches, stats.rank), (0, 0, None))
        with self.assertRaises(NotFound):
            leaderboard.personal_stats(9999)


class RetryTests(SimpleTestCase):

    @override_settings(ENGINE_RETRY_ATTEMPTS=3, ENGINE_RETRY_BACKOFF_MS=[0])
    def test_transient_errors_are_retried(self):
        calls = []

        @retry_transient
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise OperationalError('database is locked')
            return 'ok'

        self.assertEqual(flaky(), 'ok')
        self.assertEqual(len(calls), 3)

    @override_settings(ENGINE_RETRY_ATTEMPTS=2, ENGINE_RETRY_BACKOFF_MS=[0])
    def test_persistent_errors_surface_as_unavailable(self):
        @retry_transient
        def broken():
            raise OperationalError('server closed the connection')

        with self.assertRaises(Unavailable) as ctx:
            broken()
        self.assertEqual(ctx.exception.code, 'UNAVAILABLE')
        self.assertIsInstance(ctx.exception.__cause__, OperationalError)

    def test_engine_errors_are_not_retried(self):
        calls = []

        @retry_transient
        def rejected():
            calls.append(1)
            raise MatchLocked(1, MatchStatus.ONGOING)

        with self.assertRaises(MatchLocked):
            rejected()
        self.assertEqual(len(calls), 1)


class PredictionViewTests(EngineTestCase):

    @classmethod
    def setUpTestData(cls):
        super().setUpTestData()
        cls.admin = User.objects.create_superuser(username='admin', password='pass', email='admin@test.com')

    def setUp(self):
        super().setUp()
        self.client = Client()

    def post_json(self, url, data):
        return self.client.post(url, json.dumps(data), content_type='application/json')

    def test_submit_prediction(self):
        self.client.login(username='user', password='pass')
        response = self.post_json(reverse('predictions:submit_prediction'), {
            'match_id': self.match.pk, 'toss_winner_id': self.team_a.pk, 'match_winner_id': self.team_b.pk,
        })
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()['success'])
        self.assertTrue(Prediction.objects.filter(user=self.user, match=self.match).exists())

    def test_submit_requires_login(self):
        response = self.post_json(reverse('predictions:submit_prediction'), {'match_id': self.match.pk})
        self.assertEqual(response.status_code, 302)

    def test_submit_errors(self):
        self.client.login(username='user', password='pass')
        url = reverse('predictions:submit_prediction')

        response = self.post_json(url, {'match_id': self.match.pk, 'toss_winner_id': self.team_c.pk})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['code'], 'INVALID_TEAM')

        response = self.post_json(url, {'match_id': 'abc'})
        self.assertEqual(response.status_code, 400)

        response = self.post_json(url, {'match_id': 9999, 'toss_winner_id': self.team_a.pk})
        self.assertEqual(response.status_code, 404)

        lifecycle.transition(self.match.pk, MatchStatus.ONGOING, clock=self.clock)
        response = self.post_json(url, {'match_id': self.match.pk, 'toss_winner_id': self.team_a.pk})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['code'], 'MATCH_LOCKED')

    def test_non_object_json_body_is_rejected(self):
        self.client.login(username='admin', password='pass')
        for body in ('[]', '1', '"match"'):
            response = self.client.post(reverse('predictions:submit_prediction'), body,
                                        content_type='application/json')
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.json()['message'], 'Invalid prediction data.')

        response = self.client.post(reverse('predictions:transition_match', args=[self.match.pk]), '[]',
                                    content_type='application/json')
        self.assertEqual(response.status_code, 400)
        self.assertEqual(Match.objects.get(pk=self.match.pk).status, MatchStatus.UPCOMING)

    def test_submit_accepts_form_data(self):
        self.client.login(username='user', password='pass')
        response = self.client.post(reverse('predictions:submit_prediction'), {
            'match_id': self.match.pk, 'match_winner_id': self.team_a.pk,
        })
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['prediction']['toss_winner_id'], None)

    def test_match_status(self):
        response = self.client.get(reverse('predictions:match_status', args=[self.match.pk]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['status'], 'upcoming')
        self.assertTrue(response.json()['accepting_predictions'])

        response = self.client.get(reverse('predictions:match_status', args=[9999]))
        self.assertEqual(response.status_code, 404)

    def test_vote_tally(self):
        ledger.submit(self.user.pk, self.match.pk, self.team_a.pk, self.team_a.pk)
        response = self.client.get(reverse('predictions:vote_tally', args=[self.match.pk]), {'type': 'toss'})
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data['total'], 1)
        self.assertEqual(data['teams'][0], {'team_id': self.team_a.pk, 'votes': 1, 'percentage': 100})

        response = self.client.get(reverse('predictions:vote_tally', args=[self.match.pk]), {'type': 'runs'})
        self.assertEqual(response.status_code, 400)

    def test_transition_requires_admin(self):
        self.client.login(username='user', password='pass')
        url = reverse('predictions:transition_match', args=[self.match.pk])
        response = self.post_json(url, {'status': 'void'})
        self.assertEqual(response.status_code, 403)
        self.assertEqual(Match.objects.get(pk=self.match.pk).status, MatchStatus.UPCOMING)

    def test_admin_transition_and_leaderboard(self):
        ledger.submit(self.user.pk, self.match.pk, self.team_a.pk, self.team_b.pk)
        self.client.login(username='admin', password='pass')
        url = reverse('predictions:transition_match', args=[self.match.pk])

        response = self.post_json(url, {'status': 'completed', 'toss_winner_id': self.team_a.pk})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['code'], 'INVALID_TRANSITION')

        with self.captureOnCommitCallbacks(execute=True):
            response = self.post_json(url, {
                'status': 'completed', 'toss_winner_id': self.team_a.pk, 'match_winner_id': self.team_b.pk,
            })
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['status'], 'completed')

        response = self.post_json(url, {'status': 'void'})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['code'], 'STATE_CONFLICT')

        response = self.client.get(reverse('predictions:leaderboard'), {'timeframe': 'weekly'})
        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data['entries'][0]['username'], 'user')
        self.assertEqual(data['entries'][0]['points'], 2)
        self.assertEqual(data['viewer'], None)

    def test_leaderboard_bad_params(self):
        response = self.client.get(reverse('predictions:leaderboard'), {'timeframe': 'yearly'})
        self.assertEqual(response.status_code, 400)
        response = self.client.get(reverse('predictions:leaderboard'), {'limit': 'ten'})
        self.assertEqual(response.status_code, 400)

    def test_my_stats(self):
        self.client.login(username='user', password='pass')
        response = self.client.get(reverse('predictions:my_stats'))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['username'], 'user')
        self.assertEqual(response.json()['points'], 0)


class PredictionAdminTests(EngineTestCase):

    @classmethod
    def setUpTestData(cls):
        super().setUpTestData()
        cls.admin = User.objects.create_superuser(username='admin', password='pass', email='admin@test.com')

    def setUp(self):
        super().setUp()
        self.client.force_login(self.admin)

    def test_locked_picks_cannot_be_edited(self):
        prediction = ledger.submit(self.user.pk, self.match.pk, self.team_a.pk, self.team_a.pk)
        lifecycle.transition(self.match.pk, MatchStatus.ONGOING, clock=self.clock)

        response = self.client.post(reverse('admin:predictions_prediction_change', args=[prediction.pk]), {
            'user': self.admin.pk,
            'match': self.match.pk,
            'predicted_toss_winner': self.team_b.pk,
            'predicted_match_winner': self.team_b.pk,
            '_save': 'Save',
        })

        self.assertEqual(response.status_code, 302)
        prediction.refresh_from_db()
        self.assertEqual(prediction.user_id, self.user.pk)
        self.assertEqual(prediction.predicted_toss_winner_id, self.team_a.pk)
        self.assertEqual(prediction.predicted_match_winner_id, self.team_a.pk)

    def test_predictions_cannot_be_added(self):
        response = self.client.get(reverse('admin:predictions_prediction_add'))
        self.assertEqual(response.status_code, 403)


@override_settings(ENGINE_RETRY_ATTEMPTS=20, ENGINE_RETRY_BACKOFF_MS=[1, 3, 7, 13])
class ConcurrentWriterTests(TransactionTestCase):
    """Writers on separate connections racing for the same match."""

    def setUp(self):
        cache.clear()
        self.team_a = Team.objects.create(name='Mumbai')
        self.team_b = Team.objects.create(name='Chennai')
        self.tournament = Tournament.objects.create(name='Premier League')
        self.user = create_user('racer')
        self.matches = [
            Match.objects.create(
                tournament=self.tournament, team1=self.team_a, team2=self.team_b,
                location='Wankhede', match_date=timezone.now() - timedelta(seconds=1),
            )
            for _ in range(5)
        ]

    def run_together(self, *targets):
        barrier = threading.Barrier(len(targets))
        results = [None] * len(targets)

        def runner(index, target):
            try:
                barrier.wait()
                results[index] = target()
            except EngineError as e:
                results[index] = e
            finally:
                connection.close()

        threads = [threading.Thread(target=runner, args=(i, target)) for i, target in enumerate(targets)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return results

    def test_submit_racing_automatic_start(self):
        for match in self.matches:
            submitted, started = self.run_together(
                functools.partial(ledger.submit, self.user.pk, match.pk, self.team_a.pk),
                functools.partial(lifecycle.advance_if_started, match.pk),
            )

            self.assertIs(started, True)
            self.assertEqual(Match.objects.get(pk=match.pk).status, MatchStatus.ONGOING)
            if isinstance(submitted, Prediction):
                self.assertIsNotNone(Prediction.objects.get(pk=submitted.pk).locked_at)
            else:
                self.assertIsInstance(submitted, MatchLocked)
                self.assertFalse(Prediction.objects.filter(match=match).exists())
            self.assertFalse(Prediction.objects.filter(match=match, locked_at__isnull=True).exists())

    def test_only_one_automatic_start_wins(self):
        for match in self.matches:
            results = self.run_together(
                functools.partial(lifecycle.advance_if_started, match.pk),
                functools.partial(lifecycle.advance_if_started, match.pk),
            )
            self.assertEqual(results.count(True), 1)
            self.assertEqual(results.count(False), 1)
