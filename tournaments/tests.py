from datetime import timedelta
from io import StringIO
from unittest import mock

from django.contrib.admin.sites import AdminSite
from django.contrib.auth.models import User
from django.core.management import call_command
from django.db import IntegrityError
from django.test import RequestFactory, TestCase
from django.urls import reverse
from django.utils import timezone

from predictions.models import Prediction
from teams.models import Team
from .admin import MatchAdmin
from .models import ContestParticipant, Match, MatchStatus, Tournament


class BaseTournamentTestCase(TestCase):
    """Base test case with setup for common data."""

    @classmethod
    def setUpTestData(cls):
        cls.team1 = Team.objects.create(name='Mumbai')
        cls.team2 = Team.objects.create(name='Chennai')
        cls.tournament = Tournament.objects.create(name='Premier League', description='T20 league')
        cls.tournament.participants.add(cls.team1, cls.team2)
        cls.user = User.objects.create_user(username='player', password='password')

    def create_match(self, minutes_from_now, **kwargs):
        return Match.objects.create(
            tournament=self.tournament,
            team1=self.team1,
            team2=self.team2,
            location='Eden Gardens',
            match_date=timezone.now() + timedelta(minutes=minutes_from_now),
            **kwargs
        )


class TournamentModelTests(BaseTournamentTestCase):

    def test_str_methods(self):
        match = self.create_match(60)
        self.assertEqual(str(self.tournament), 'Premier League')
        self.assertEqual(str(match), 'Mumbai vs Chennai (Premier League)')

    def test_new_match_is_upcoming(self):
        match = self.create_match(60)
        self.assertEqual(match.status, MatchStatus.UPCOMING)
        self.assertFalse(match.is_terminal)
        self.assertEqual(match.team_ids, (self.team1.pk, self.team2.pk))
        self.assertTrue(match.has_team(self.team2.pk))
        self.assertFalse(match.has_team(9999))

    def test_terminal_statuses(self):
        for status in (MatchStatus.COMPLETED, MatchStatus.TIE, MatchStatus.VOID):
            self.assertTrue(self.create_match(-60, status=status).is_terminal)
        self.assertFalse(self.create_match(-60, status=MatchStatus.ONGOING).is_terminal)

    def test_matches_ordered_by_date(self):
        later = self.create_match(120)
        sooner = self.create_match(30)
        self.assertEqual(list(self.tournament.matches.all()), [sooner, later])

    def test_contest_participant_is_unique(self):
        contest = Tournament.objects.create(name='Fantasy Cup', is_contest=True)
        entry = ContestParticipant.objects.create(tournament=contest, user=self.user)
        self.assertEqual(str(entry), 'player in Fantasy Cup')
        with self.assertRaises(IntegrityError):
            ContestParticipant.objects.create(tournament=contest, user=self.user)


class AdvanceMatchesCommandTests(BaseTournamentTestCase):

    def test_single_sweep_starts_due_matches(self):
        due = self.create_match(-1)
        later = self.create_match(60)
        Prediction.objects.create(user=self.user, match=due, predicted_toss_winner=self.team1)

        out = StringIO()
        call_command('advance_matches', '--once', stdout=out)

        self.assertIn(f'Started 1 match(es): {due.pk}', out.getvalue())
        self.assertEqual(Match.objects.get(pk=due.pk).status, MatchStatus.ONGOING)
        self.assertEqual(Match.objects.get(pk=later.pk).status, MatchStatus.UPCOMING)
        self.assertIsNotNone(Prediction.objects.get(match=due).locked_at)

    def test_sweep_with_nothing_due_is_quiet(self):
        self.create_match(60)
        out = StringIO()
        call_command('advance_matches', '--once', stdout=out)
        self.assertEqual(out.getvalue(), '')


class MatchAdminTests(BaseTournamentTestCase):

    def setUp(self):
        self.model_admin = MatchAdmin(Match, AdminSite())
        self.request = RequestFactory().post('/admin/tournaments/match/')

    def test_start_and_void_actions_use_state_machine(self):
        match = self.create_match(30)
        with mock.patch.object(self.model_admin, 'message_user'):
            self.model_admin.start_matches(self.request, Match.objects.filter(pk=match.pk))
        self.assertEqual(Match.objects.get(pk=match.pk).status, MatchStatus.ONGOING)

        with mock.patch.object(self.model_admin, 'message_user'):
            self.model_admin.void_matches(self.request, Match.objects.filter(pk=match.pk))
        self.assertEqual(Match.objects.get(pk=match.pk).status, MatchStatus.VOID)

    def test_finished_match_is_reported_not_moved(self):
        match = self.create_match(-60, status=MatchStatus.TIE, toss_winner=self.team1)
        with mock.patch.object(self.model_admin, 'message_user') as message_user:
            self.model_admin.void_matches(self.request, Match.objects.filter(pk=match.pk))

        self.assertEqual(Match.objects.get(pk=match.pk).status, MatchStatus.TIE)
        self.assertEqual(message_user.call_count, 2)
        message_user.assert_called_with(self.request, '0 match(es) moved to void.')

    def test_teams_fixed_once_predicted(self):
        match = self.create_match(30)
        self.assertNotIn('team1', self.model_admin.get_readonly_fields(self.request, match))

        Prediction.objects.create(user=self.user, match=match, predicted_toss_winner=self.team1)
        readonly = self.model_admin.get_readonly_fields(self.request, match)
        for field in ('tournament', 'team1', 'team2', 'status'):
            self.assertIn(field, readonly)
        self.assertNotIn('team1', self.model_admin.get_readonly_fields(self.request, None))

    def test_finished_match_keeps_its_teams(self):
        match = self.create_match(-60, status=MatchStatus.COMPLETED,
                                  toss_winner=self.team1, match_winner=self.team1)
        other = Team.objects.create(name='Kolkata')
        admin_user = User.objects.create_superuser(username='admin', password='password', email='admin@test.com')
        self.client.force_login(admin_user)

        local = timezone.localtime(match.match_date)
        response = self.client.post(reverse('admin:tournaments_match_change', args=[match.pk]), {
            'tournament': self.tournament.pk,
            'team1': other.pk,
            'team2': self.team2.pk,
            'location': 'Eden Gardens',
            'match_date_0': local.strftime('%Y-%m-%d'),
            'match_date_1': local.strftime('%H:%M:%S'),
            'team1_score': '180/4',
            'team2_score': '150/9',
            'result_summary': 'Mumbai won by 30 runs',
            '_save': 'Save',
        })

        self.assertEqual(response.status_code, 302)
        match.refresh_from_db()
        self.assertEqual(match.team_ids, (self.team1.pk, self.team2.pk))
        self.assertEqual(match.result_summary, 'Mumbai won by 30 runs')
        self.assertTrue(match.has_team(match.match_winner_id))
