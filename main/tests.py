from unittest import mock

from django.contrib.admin.sites import AdminSite
from django.contrib.auth.models import User
from django.core.cache import cache
from django.test import RequestFactory, TestCase

from .admin import CustomUserAdmin
from .models import Profile


class ProfileSignalTests(TestCase):

    def test_new_user_gets_unverified_profile(self):
        """The profile is created by the post_save signal."""
        user = User.objects.create_user(username='pemain', password='pass')
        profile = Profile.objects.get(user=user)
        self.assertEqual(profile.role, 'USER')
        self.assertFalse(profile.is_verified)
        self.assertFalse(profile.is_admin)
        self.assertEqual(str(profile), 'pemain Profile')

    def test_superuser_profile_is_admin_and_verified(self):
        admin = User.objects.create_superuser(username='admin', password='pass', email='admin@test.com')
        self.assertEqual(admin.profile.role, 'ADMIN')
        self.assertTrue(admin.profile.is_verified)
        self.assertTrue(admin.profile.is_admin)

    def test_saving_user_again_keeps_profile(self):
        user = User.objects.create_user(username='pemain', password='pass')
        user.first_name = 'Rohit'
        user.save()
        self.assertEqual(Profile.objects.filter(user=user).count(), 1)

    def test_admin_role_without_superuser(self):
        user = User.objects.create_user(username='panitia', password='pass')
        user.profile.role = 'ADMIN'
        user.profile.save()
        self.assertTrue(Profile.objects.get(user=user).is_admin)


class UserAdminActionTests(TestCase):

    @classmethod
    def setUpTestData(cls):
        cls.first = User.objects.create_user(username='first', password='pass')
        cls.second = User.objects.create_user(username='second', password='pass')

    def setUp(self):
        cache.clear()
        self.model_admin = CustomUserAdmin(User, AdminSite())
        self.request = RequestFactory().post('/admin/auth/user/')

    def test_verify_and_unverify(self):
        queryset = User.objects.filter(pk__in=[self.first.pk, self.second.pk])
        with mock.patch.object(self.model_admin, 'message_user') as message_user:
            self.model_admin.verify_users(self.request, queryset)
        message_user.assert_called_once_with(self.request, '2 user(s) verified.')
        self.assertEqual(Profile.objects.filter(is_verified=True).count(), 2)

        with mock.patch.object(self.model_admin, 'message_user') as message_user:
            self.model_admin.unverify_users(self.request, User.objects.filter(pk=self.first.pk))
        message_user.assert_called_once_with(self.request, '1 user(s) unverified.')
        self.assertFalse(Profile.objects.get(user=self.first).is_verified)

    def test_verification_invalidates_leaderboard(self):
        with mock.patch('predictions.signals.invalidate') as invalidate, \
                mock.patch.object(self.model_admin, 'message_user'):
            self.model_admin.verify_users(self.request, User.objects.filter(pk=self.first.pk))
        invalidate.assert_called_once()

    def test_list_columns(self):
        self.assertEqual(self.model_admin.get_role(self.first), 'USER')
        self.assertFalse(self.model_admin.get_verified(self.first))
