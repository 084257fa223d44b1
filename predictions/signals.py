from django.db.models.signals import post_save, post_delete
from django.dispatch import Signal, receiver

from main.models import Profile
from tournaments.models import ContestParticipant
from .leaderboard import invalidate

# Sent after the transaction that locked a match's predictions commits.
# Arguments: match_id, locked.
match_locked = Signal()

# Sent after the transaction that scored a match commits.
# Arguments: match_id, status, scored.
match_scored = Signal()


@receiver(match_scored)
def invalidate_leaderboard_after_scoring(sender, match_id, **kwargs):
    invalidate(reason=f"match {match_id} scored")


@receiver(post_save, sender=Profile)
def invalidate_leaderboard_on_profile_change(sender, instance, created, **kwargs):
    # Verification decides who is ranked.
    if not created:
        invalidate(reason=f"profile {instance.pk} changed")


@receiver(post_save, sender=ContestParticipant)
@receiver(post_delete, sender=ContestParticipant)
def invalidate_leaderboard_on_contest_change(sender, instance, **kwargs):
    invalidate(reason=f"contest {instance.tournament_id} participants changed")
