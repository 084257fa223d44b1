from dataclasses import dataclass, field

from django.db.models import Count

from tournaments.models import Match, OPEN_STATUSES
from .exceptions import EngineError, NotFound
from .models import Prediction, PredictionType

PICK_FIELDS = {
    PredictionType.TOSS: 'predicted_toss_winner',
    PredictionType.MATCH: 'predicted_match_winner',
}


@dataclass
class VoteTally:
    match_id: int
    kind: str
    is_open: bool
    counts: dict = field(default_factory=dict)

    @property
    def total(self):
        return sum(self.counts.values())

    def percentages(self):
        total = self.total
        if not total:
            return {team_id: 0 for team_id in self.counts}
        return {team_id: round(count * 100 / total) for team_id, count in self.counts.items()}


def tally(match_id, kind):
    """Count the live picks per team for one prediction type of a match."""
    try:
        kind = PredictionType(kind)
    except ValueError:
        raise EngineError(f"Unknown prediction type {kind!r}", code="INVALID_PREDICTION_TYPE")
    try:
        match = Match.objects.get(pk=match_id)
    except Match.DoesNotExist:
        raise NotFound(f"Match {match_id} not found")

    result = VoteTally(
        match_id=match.pk,
        kind=kind.value,
        is_open=match.status in OPEN_STATUSES,
        counts={match.team1_id: 0, match.team2_id: 0},
    )
    if not result.is_open:
        return result

    pick = PICK_FIELDS[kind]
    rows = (
        Prediction.objects.filter(match=match, **{f'{pick}__in': match.team_ids})
        .values(pick)
        .annotate(votes=Count('id'))
    )
    for row in rows:
        result.counts[row[pick]] = row['votes']
    return result
