from django.db import models
from django.contrib.auth.models import User
from teams.models import Team


class MatchStatus(models.TextChoices):
    UPCOMING = 'upcoming', 'Upcoming'
    ONGOING = 'ongoing', 'Ongoing'
    COMPLETED = 'completed', 'Completed'
    TIE = 'tie', 'Tie'
    VOID = 'void', 'Void'


TERMINAL_STATUSES = frozenset({MatchStatus.COMPLETED, MatchStatus.TIE, MatchStatus.VOID})
OPEN_STATUSES = frozenset({MatchStatus.UPCOMING, MatchStatus.ONGOING})


class Tournament(models.Model):
    name = models.CharField(max_length=255, unique=True)
    description = models.TextField(blank=True, null=True)
    banner = models.URLField(max_length=500, blank=True, null=True)
    start_date = models.DateField(null=True, blank=True)
    end_date = models.DateField(null=True, blank=True)
    participants = models.ManyToManyField(Team, related_name='tournaments', blank=True)
    # Contest tournaments only rank users on their participant list.
    is_contest = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return self.name


class ContestParticipant(models.Model):
    tournament = models.ForeignKey(Tournament, related_name='contest_participants', on_delete=models.CASCADE)
    user = models.ForeignKey(User, related_name='contest_entries', on_delete=models.CASCADE)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['tournament', 'user'], name='unique_contest_participant'),
        ]

    def __str__(self):
        return f"{self.user.username} in {self.tournament.name}"


class Match(models.Model):
    tournament = models.ForeignKey(Tournament, related_name='matches', on_delete=models.CASCADE)
    team1 = models.ForeignKey(Team, related_name='matches_as_team1', on_delete=models.CASCADE)
    team2 = models.ForeignKey(Team, related_name='matches_as_team2', on_delete=models.CASCADE)
    location = models.CharField(max_length=255)
    match_date = models.DateTimeField()
    # Written only by predictions.lifecycle.
    status = models.CharField(max_length=20, choices=MatchStatus.choices, default=MatchStatus.UPCOMING)
    toss_winner = models.ForeignKey(
        Team, related_name='tosses_won', on_delete=models.SET_NULL, null=True, blank=True)
    match_winner = models.ForeignKey(
        Team, related_name='matches_won', on_delete=models.SET_NULL, null=True, blank=True)
    team1_score = models.CharField(max_length=100, blank=True)
    team2_score = models.CharField(max_length=100, blank=True)
    result_summary = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['match_date']
        indexes = [
            models.Index(fields=['status', 'match_date'], name='match_status_date_idx'),
        ]
        verbose_name_plural = 'matches'

    def __str__(self):
        return f"{self.team1} vs {self.team2} ({self.tournament.name})"

    @property
    def team_ids(self):
        return (self.team1_id, self.team2_id)

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def has_team(self, team_id):
        return team_id in self.team_ids
