from django.db import models
from django.contrib.auth.models import User


class Profile(models.Model):
    ROLE_CHOICES = (
        ('ADMIN', 'Admin'),
        ('USER', 'User'),
    )

    user = models.OneToOneField(
        User, on_delete=models.CASCADE, related_name='profile')
    role = models.CharField(
        max_length=20, choices=ROLE_CHOICES, default='USER')
    display_name = models.CharField(max_length=150, blank=True)
    bio = models.TextField(blank=True, null=True)
    # Only verified users are ranked on the public leaderboard.
    is_verified = models.BooleanField(default=False)

    @property
    def is_admin(self):
        return self.role == 'ADMIN' or self.user.is_superuser

    def __str__(self):
        return f'{self.user.username} Profile'
