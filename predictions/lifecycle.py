"""
Match state machine.

upcoming -> ongoing -> completed | tie | void, with administrators allowed
to skip straight from upcoming to any later state. Terminal states are
absorbing. Every transition locks the match row, and a transition into a
terminal state scores the match inside the same transaction.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from django.db import transaction

from tournaments.models import Match, MatchStatus, TERMINAL_STATUSES
from . import ledger
from .clock import get_clock, seconds_until
from .exceptions import InvalidTeam, InvalidTransition, NotFound, StateConflict, retry_transient

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    MatchStatus.UPCOMING: (MatchStatus.ONGOING, MatchStatus.COMPLETED, MatchStatus.TIE, MatchStatus.VOID),
    MatchStatus.ONGOING: (MatchStatus.COMPLETED, MatchStatus.TIE, MatchStatus.VOID),
    MatchStatus.COMPLETED: (),
    MatchStatus.TIE: (),
    MatchStatus.VOID: (),
}


@dataclass
class MatchState:
    match_id: int
    status: str
    match_date: object
    toss_winner_id: Optional[int]
    match_winner_id: Optional[int]
    seconds_until_start: int

    @property
    def accepting_predictions(self):
        return self.status == MatchStatus.UPCOMING


def _coerce_status(value):
    try:
        return MatchStatus(value)
    except ValueError:
        raise InvalidTransition(f"Unknown match status {value!r}")


def _validate_result(match, new_status, toss_winner_id, match_winner_id):
    for team_id in (toss_winner_id, match_winner_id):
        if team_id is not None and not match.has_team(team_id):
            raise InvalidTeam(f"Team {team_id} is not playing in match {match.pk}")

    if new_status == MatchStatus.COMPLETED:
        if toss_winner_id is None or match_winner_id is None:
            raise InvalidTransition("A completed match needs both the toss and the match winner")
    elif new_status == MatchStatus.TIE:
        if toss_winner_id is None:
            raise InvalidTransition("A tied match needs the toss winner")
        if match_winner_id is not None:
            raise InvalidTransition("A tied match has no match winner")
    elif new_status == MatchStatus.VOID:
        if toss_winner_id is not None or match_winner_id is not None:
            raise InvalidTransition("A void match has no winners")
    elif new_status == MatchStatus.ONGOING:
        if match_winner_id is not None:
            raise InvalidTransition("An ongoing match has no match winner yet")
    else:
        raise InvalidTransition(f"Cannot move a match back to {new_status}")


@retry_transient
def transition(match_id, new_status, toss_winner_id=None, match_winner_id=None,
               expected_status=None, result=None, clock=None):
    """
    Move a match to ``new_status``.

    ``expected_status`` is the status the caller last saw; if the match
    has moved on since, ``StateConflict`` is raised and nothing changes.
    ``result`` may carry ``team1_score``, ``team2_score`` and
    ``result_summary``. If scoring fails the match keeps its old status.
    """
    new_status = _coerce_status(new_status)
    if expected_status is not None:
        expected_status = _coerce_status(expected_status)
    now = get_clock(clock).now()

    with transaction.atomic():
        match = ledger.lock_match_row(match_id)
        previous = MatchStatus(match.status)

        if expected_status is not None and previous != expected_status:
            raise StateConflict(f"Match {match.pk} is {previous}, expected {expected_status}")
        if previous in TERMINAL_STATUSES:
            raise StateConflict(f"Match {match.pk} is already {previous}")
        if new_status not in ALLOWED_TRANSITIONS[previous]:
            raise InvalidTransition(f"Match {match.pk} cannot go from {previous} to {new_status}")
        _validate_result(match, new_status, toss_winner_id, match_winner_id)

        match.status = new_status
        update_fields = ['status']
        if toss_winner_id is not None or new_status in TERMINAL_STATUSES:
            match.toss_winner_id = toss_winner_id
            update_fields.append('toss_winner')
        if new_status in TERMINAL_STATUSES:
            match.match_winner_id = match_winner_id
            update_fields.append('match_winner')
        for field in ('team1_score', 'team2_score', 'result_summary'):
            if result and result.get(field) is not None:
                setattr(match, field, result[field])
                update_fields.append(field)
        match.save(update_fields=update_fields)

        ledger.lock(match.pk, now=now)
        if new_status in TERMINAL_STATUSES:
            ledger.score(match.pk, now=now)

    logger.info("Match %s moved from %s to %s", match_id, previous, new_status)
    return match


@retry_transient
def advance_if_started(match_id, clock=None):
    """
    Start an upcoming match whose scheduled time has passed.

    Returns True if this call made the transition, False if there was
    nothing to do (not yet due, or already moved by someone else).
    """
    now = get_clock(clock).now()
    with transaction.atomic():
        match = ledger.lock_match_row(match_id)
        if match.status != MatchStatus.UPCOMING or match.match_date > now:
            return False
        match.status = MatchStatus.ONGOING
        match.save(update_fields=['status'])
        ledger.lock(match.pk, now=now)

    logger.info("Match %s started automatically at %s", match_id, now.isoformat())
    return True


def advance_started_matches(clock=None, should_continue=None):
    """
    Start every upcoming match that is due.

    ``should_continue`` is checked between matches so a sweep can be
    cancelled without interrupting a transition in flight.
    """
    clock = get_clock(clock)
    due = list(
        Match.objects.filter(status=MatchStatus.UPCOMING, match_date__lte=clock.now())
        .order_by('match_date', 'pk')
        .values_list('pk', flat=True)
    )
    advanced = []
    for index, match_id in enumerate(due):
        if should_continue is not None and not should_continue():
            logger.info("Sweep cancelled with %d due matches left", len(due) - index)
            break
        if advance_if_started(match_id, clock=clock):
            advanced.append(match_id)
    return advanced


def get_match_status(match_id, clock=None):
    try:
        match = Match.objects.get(pk=match_id)
    except Match.DoesNotExist:
        raise NotFound(f"Match {match_id} not found")
    return MatchState(
        match_id=match.pk,
        status=match.status,
        match_date=match.match_date,
        toss_winner_id=match.toss_winner_id,
        match_winner_id=match.match_winner_id,
        seconds_until_start=seconds_until(match.match_date, get_clock(clock).now()),
    )
