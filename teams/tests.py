from django.contrib.admin.sites import AdminSite
from django.db import IntegrityError
from django.test import TestCase

from teams.admin import TeamAdmin
from teams.models import Team
from tournaments.models import Tournament


class TeamModelTests(TestCase):

    def test_str_and_defaults(self):
        team = Team.objects.create(name='Rajasthan')
        self.assertEqual(str(team), 'Rajasthan')
        self.assertFalse(team.is_custom)
        self.assertIsNone(team.logo)

    def test_name_is_unique(self):
        Team.objects.create(name='Rajasthan')
        with self.assertRaises(IntegrityError):
            Team.objects.create(name='Rajasthan')


class TeamAdminTests(TestCase):

    def test_tournaments_count(self):
        team = Team.objects.create(name='Punjab')
        for name in ('Premier League', 'Champions Trophy'):
            Tournament.objects.create(name=name).participants.add(team)

        model_admin = TeamAdmin(Team, AdminSite())
        self.assertEqual(model_admin.get_tournaments_count(team), 2)
