from django.db import models
from django.contrib.auth.models import User


class PredictionType(models.TextChoices):
    TOSS = 'toss', 'Toss winner'
    MATCH = 'match', 'Match winner'


class Prediction(models.Model):
    user = models.ForeignKey(User, related_name='predictions', on_delete=models.CASCADE)
    match = models.ForeignKey('tournaments.Match', related_name='predictions', on_delete=models.CASCADE)
    predicted_toss_winner = models.ForeignKey(
        'teams.Team', related_name='toss_predictions_on', on_delete=models.CASCADE, null=True, blank=True)
    predicted_match_winner = models.ForeignKey(
        'teams.Team', related_name='match_predictions_on', on_delete=models.CASCADE, null=True, blank=True)
    points_earned = models.IntegerField(null=True, blank=True)
    toss_correct = models.BooleanField(null=True, blank=True)
    match_correct = models.BooleanField(null=True, blank=True)
    locked_at = models.DateTimeField(null=True, blank=True)
    scored_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['user', 'match'], name='unique_prediction_per_user_match'),
        ]

    def __str__(self):
        return f"{self.user.username}'s prediction for {self.match}"


class PointsLedgerEntry(models.Model):
    user = models.ForeignKey(User, related_name='points_ledger', on_delete=models.CASCADE)
    match = models.ForeignKey('tournaments.Match', related_name='points_ledger', on_delete=models.CASCADE)
    points = models.IntegerField()
    reason = models.CharField(max_length=255)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']
        verbose_name_plural = 'points ledger entries'

    def __str__(self):
        return f"{self.points:+d} to {self.user.username} ({self.reason})"
