"""
Prediction ledger.

Owns the single prediction a user holds for a match. Predictions are
editable while the match is upcoming, frozen by ``lock`` when it leaves
that state, and scored by ``score`` once it reaches a terminal state.
All three serialize on the match row (``select_for_update``).
"""
import logging

from django.contrib.auth.models import User
from django.db import transaction

from tournaments.models import Match, MatchStatus, TERMINAL_STATUSES
from .clock import get_clock
from .exceptions import InvalidTeam, InvalidTransition, MatchLocked, NotFound, retry_transient
from .models import PointsLedgerEntry, Prediction
from .signals import match_locked, match_scored

logger = logging.getLogger(__name__)

TOSS_REASON = "Correct toss winner prediction"
MATCH_REASON = "Correct match winner prediction"


def lock_match_row(match_id):
    """Fetch the match holding its row lock. Must run inside an atomic block."""
    try:
        return Match.objects.select_for_update().get(pk=match_id)
    except Match.DoesNotExist:
        raise NotFound(f"Match {match_id} not found")


def evaluate(status, toss_winner_id, match_winner_id, predicted_toss_id, predicted_match_id):
    """
    Score one prediction against a terminal result.

    Returns ``(points, toss_correct, match_correct)``. A pick that is not
    scored for the given status is reported as ``None``; a missing pick
    that is scored counts as wrong.
    """
    if status == MatchStatus.VOID:
        return 0, None, None
    elif status == MatchStatus.TIE:
        toss_correct = predicted_toss_id is not None and predicted_toss_id == toss_winner_id
        return int(toss_correct), toss_correct, None
    elif status == MatchStatus.COMPLETED:
        toss_correct = predicted_toss_id is not None and predicted_toss_id == toss_winner_id
        match_correct = predicted_match_id is not None and predicted_match_id == match_winner_id
        return int(toss_correct) + int(match_correct), toss_correct, match_correct
    elif status in (MatchStatus.UPCOMING, MatchStatus.ONGOING):
        raise InvalidTransition(f"Cannot score a match that is still {status}")
    raise InvalidTransition(f"Unknown match status {status!r}")


@retry_transient
def submit(user_id, match_id, predicted_toss_winner_id=None, predicted_match_winner_id=None):
    """
    Create or update the user's prediction for an upcoming match.

    A pick left as ``None`` keeps whatever was stored before, so toss and
    match picks can be made in separate calls.
    """
    if predicted_toss_winner_id is None and predicted_match_winner_id is None:
        raise InvalidTeam("Pick a toss winner, a match winner or both")
    if not User.objects.filter(pk=user_id).exists():
        raise NotFound(f"User {user_id} not found")

    with transaction.atomic():
        match = lock_match_row(match_id)
        if match.status != MatchStatus.UPCOMING:
            raise MatchLocked(match.pk, match.status)

        for team_id in (predicted_toss_winner_id, predicted_match_winner_id):
            if team_id is not None and not match.has_team(team_id):
                raise InvalidTeam(f"Team {team_id} is not playing in match {match.pk}")

        prediction, created = Prediction.objects.get_or_create(user_id=user_id, match=match)
        if predicted_toss_winner_id is not None:
            prediction.predicted_toss_winner_id = predicted_toss_winner_id
        if predicted_match_winner_id is not None:
            prediction.predicted_match_winner_id = predicted_match_winner_id
        prediction.save(update_fields=['predicted_toss_winner', 'predicted_match_winner', 'updated_at'])

    logger.info("%s prediction %s for user %s on match %s",
                "Created" if created else "Updated", prediction.pk, user_id, match_id)
    return prediction


@retry_transient
def lock(match_id, now=None, clock=None):
    """Freeze every prediction of a match that has left ``upcoming``. Idempotent."""
    now = now or get_clock(clock).now()
    with transaction.atomic():
        match = lock_match_row(match_id)
        if match.status == MatchStatus.UPCOMING:
            raise InvalidTransition(f"Match {match.pk} is still open for predictions")
        locked = Prediction.objects.filter(match=match, locked_at__isnull=True).update(locked_at=now)
        transaction.on_commit(
            lambda: match_locked.send(sender=Match, match_id=match.pk, locked=locked))

    if locked:
        logger.info("Locked %d predictions for match %s", locked, match_id)
    return locked


@retry_transient
def score(match_id, now=None, clock=None):
    """
    Score every prediction of a terminal match.

    Re-scoring recomputes from the stored result and overwrites the
    previous points and ledger entries, so repeated calls never double
    credit. The whole batch commits or none of it does.
    """
    now = now or get_clock(clock).now()
    with transaction.atomic():
        match = lock_match_row(match_id)
        if match.status not in TERMINAL_STATUSES:
            raise InvalidTransition(f"Match {match.pk} is {match.status}, not finished")
        if Prediction.objects.filter(match=match, locked_at__isnull=True).exists():
            raise InvalidTransition(f"Match {match.pk} has unlocked predictions")

        predictions = list(Prediction.objects.filter(match=match).order_by('pk'))
        entries = []
        for prediction in predictions:
            points, toss_correct, match_correct = evaluate(
                match.status, match.toss_winner_id, match.match_winner_id,
                prediction.predicted_toss_winner_id, prediction.predicted_match_winner_id,
            )
            prediction.points_earned = points
            prediction.toss_correct = toss_correct
            prediction.match_correct = match_correct
            prediction.scored_at = now
            if toss_correct:
                entries.append(PointsLedgerEntry(user_id=prediction.user_id, match=match, points=1, reason=TOSS_REASON))
            if match_correct:
                entries.append(PointsLedgerEntry(user_id=prediction.user_id, match=match, points=1, reason=MATCH_REASON))

        Prediction.objects.bulk_update(
            predictions, ['points_earned', 'toss_correct', 'match_correct', 'scored_at'], batch_size=500)
        PointsLedgerEntry.objects.filter(match=match).delete()
        PointsLedgerEntry.objects.bulk_create(entries, batch_size=500)
        transaction.on_commit(
            lambda: match_scored.send(sender=Match, match_id=match.pk, status=match.status, scored=len(predictions)))

    logger.info("Scored %d predictions for match %s (%s)", len(predictions), match_id, match.status)
    return len(predictions)
