"""
Leaderboard aggregation.

Standings are folded from scored predictions of eligible users, ordered
by points, then correct picks, then account age, then user id, and
ranked 1..n. A full standings snapshot is cached per (timeframe,
tournament) under a version number that ``invalidate`` bumps whenever
scoring or eligibility changes; pages and the viewer's own row are both
cut from the same snapshot.
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from django.conf import settings
from django.contrib.auth.models import User
from django.core.cache import cache
from django.db import models
from django.db.models import Case, Count, F, IntegerField, Q, Sum, Value, When
from django.db.models.functions import Coalesce

from tournaments.models import MatchStatus, TERMINAL_STATUSES, Tournament
from .clock import get_clock
from .eligibility import eligible_predictions
from .exceptions import EngineError, NotFound, retry_transient
from .models import Prediction

logger = logging.getLogger(__name__)

CACHE_VERSION_KEY = 'leaderboard:version'


class Timeframe(models.TextChoices):
    WEEKLY = 'weekly', 'This week'
    MONTHLY = 'monthly', 'This month'
    ALL_TIME = 'all-time', 'All time'


WINDOWS = {
    Timeframe.WEEKLY: timedelta(days=7),
    Timeframe.MONTHLY: timedelta(days=30),
    Timeframe.ALL_TIME: None,
}


@dataclass
class LeaderboardEntry:
    rank: Optional[int]
    user_id: int
    username: str
    display_name: str
    is_verified: bool
    points: int = 0
    correct_predictions: int = 0
    total_matches: int = 0
    scoreable_picks: int = 0

    @property
    def accuracy(self):
        if not self.scoreable_picks:
            return 0.0
        return round(self.correct_predictions * 100 / self.scoreable_picks, 1)


@dataclass
class LeaderboardPage:
    timeframe: str
    tournament_id: Optional[int]
    offset: int
    limit: int
    total: int
    entries: List[LeaderboardEntry] = field(default_factory=list)
    viewer: Optional[LeaderboardEntry] = None


def _coerce_timeframe(value):
    try:
        return Timeframe(value)
    except ValueError:
        raise EngineError(f"Unknown timeframe {value!r}", code="INVALID_TIMEFRAME")


def window_start(timeframe, now):
    """Start of a rolling window, truncated to the minute. None when unbounded."""
    span = WINDOWS[timeframe]
    if span is None:
        return None
    return (now - span).replace(second=0, microsecond=0)


def scored_predictions(timeframe, tournament_id=None, now=None):
    queryset = Prediction.objects.filter(scored_at__isnull=False, match__status__in=TERMINAL_STATUSES)
    start = window_start(timeframe, now)
    if start is not None:
        queryset = queryset.filter(match__match_date__gte=start)
    if tournament_id is not None:
        queryset = queryset.filter(match__tournament_id=tournament_id)
    return queryset


def aggregate(queryset):
    """Group scored predictions by user, best first."""
    return (
        queryset.values(
            'user_id',
            'user__username',
            'user__date_joined',
            'user__profile__display_name',
            'user__profile__is_verified',
        )
        .annotate(
            points=Coalesce(Sum('points_earned'), 0),
            toss_hits=Count('id', filter=Q(toss_correct=True)),
            match_hits=Count('id', filter=Q(match_correct=True)),
            total_matches=Count('id'),
            scoreable_picks=Coalesce(Sum(Case(
                When(match__status=MatchStatus.COMPLETED, then=Value(2)),
                When(match__status=MatchStatus.TIE, then=Value(1)),
                default=Value(0),
                output_field=IntegerField(),
            )), 0),
        )
        .annotate(correct_predictions=F('toss_hits') + F('match_hits'))
        .order_by('-points', '-correct_predictions', 'user__date_joined', 'user_id')
    )


def _to_entry(row, rank):
    return LeaderboardEntry(
        rank=rank,
        user_id=row['user_id'],
        username=row['user__username'],
        display_name=row['user__profile__display_name'] or row['user__username'],
        is_verified=bool(row['user__profile__is_verified']),
        points=row['points'],
        correct_predictions=row['correct_predictions'],
        total_matches=row['total_matches'],
        scoreable_picks=row['scoreable_picks'],
    )


def _cache_version():
    cache.add(CACHE_VERSION_KEY, 1, timeout=None)
    return cache.get(CACHE_VERSION_KEY) or 1


def invalidate(reason=''):
    """Drop every cached standings snapshot."""
    cache.add(CACHE_VERSION_KEY, 1, timeout=None)
    try:
        version = cache.incr(CACHE_VERSION_KEY)
    except ValueError:
        version = 1
        cache.set(CACHE_VERSION_KEY, version, timeout=None)
    logger.info("Leaderboard cache moved to version %s %s", version, f"({reason})" if reason else "")
    return version


def standings(timeframe=Timeframe.ALL_TIME, tournament_id=None, clock=None):
    """Every eligible user with a scored prediction in scope, ranked."""
    timeframe = _coerce_timeframe(timeframe)
    now = get_clock(clock).now()
    start = window_start(timeframe, now)
    # Rolling windows are keyed by their start minute so they keep moving.
    window = start.strftime('%Y%m%d%H%M') if start else 'all'
    key = f'leaderboard:{timeframe.value}:{tournament_id or "all"}:{window}'
    version = _cache_version()
    cached = cache.get(key, version=version)
    if cached is not None:
        return cached

    queryset = eligible_predictions(scored_predictions(timeframe, tournament_id, now))
    table = [_to_entry(row, rank) for rank, row in enumerate(aggregate(queryset), start=1)]
    cache.set(key, table, timeout=getattr(settings, 'LEADERBOARD_CACHE_TIMEOUT', 60), version=version)
    return table


@retry_transient
def rank(timeframe=Timeframe.ALL_TIME, tournament_id=None, limit=None, offset=0, viewer_id=None, clock=None):
    """
    One page of the public leaderboard.

    The public list never goes past ``LEADERBOARD_MAX_ENTRIES``. If
    ``viewer_id`` is ranked but not on the returned page, their row is
    returned separately as ``viewer``.
    """
    timeframe = _coerce_timeframe(timeframe)
    if tournament_id is not None and not Tournament.objects.filter(pk=tournament_id).exists():
        raise NotFound(f"Tournament {tournament_id} not found")

    cap = getattr(settings, 'LEADERBOARD_MAX_ENTRIES', 20)
    if limit is None:
        limit = getattr(settings, 'LEADERBOARD_PAGE_SIZE', 10)
    offset = max(0, offset)
    limit = max(0, min(limit, cap - offset))

    table = standings(timeframe, tournament_id, clock=clock)
    page = LeaderboardPage(
        timeframe=timeframe.value,
        tournament_id=tournament_id,
        offset=offset,
        limit=limit,
        total=len(table),
        entries=table[offset:offset + limit],
    )
    if viewer_id is not None and all(entry.user_id != viewer_id for entry in page.entries):
        page.viewer = next((entry for entry in table if entry.user_id == viewer_id), None)
    return page


@retry_transient
def personal_stats(user_id, timeframe=Timeframe.ALL_TIME, tournament_id=None, clock=None):
    """
    A single user's totals, whether or not they are publicly ranked.
    ``rank`` is their public position, or None when they are not ranked.
    """
    timeframe = _coerce_timeframe(timeframe)
    now = get_clock(clock).now()
    rows = list(aggregate(scored_predictions(timeframe, tournament_id, now).filter(user_id=user_id)))
    public = next((entry for entry in standings(timeframe, tournament_id, clock=clock)
                   if entry.user_id == user_id), None)
    if not rows:
        try:
            user = User.objects.select_related('profile').get(pk=user_id)
        except User.DoesNotExist:
            raise NotFound(f"User {user_id} not found")
        return LeaderboardEntry(
            rank=None,
            user_id=user.pk,
            username=user.username,
            display_name=user.profile.display_name or user.username,
            is_verified=user.profile.is_verified,
        )
    return _to_entry(rows[0], public.rank if public else None)
