import json
import logging

from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.views.decorators.http import require_GET, require_POST

from . import ledger, leaderboard, lifecycle, votes
from .exceptions import EngineError

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    'NOT_FOUND': 404,
    'MATCH_LOCKED': 409,
    'STATE_CONFLICT': 409,
    'INVALID_TRANSITION': 400,
    'INVALID_TEAM': 400,
    'INVALID_TIMEFRAME': 400,
    'INVALID_PREDICTION_TYPE': 400,
    'UNAVAILABLE': 503,
}


def _error_response(error):
    return JsonResponse(
        {'success': False, 'code': error.code, 'message': error.message},
        status=ERROR_STATUS.get(error.code, 400),
    )


def _read_body(request):
    if request.content_type == 'application/json':
        data = json.loads(request.body or b'{}')
        if not isinstance(data, dict):
            raise ValueError('Request body must be a JSON object')
        return data
    return request.POST


def _optional_int(value):
    if value in (None, ''):
        return None
    return int(value)


def _entry_json(entry):
    if entry is None:
        return None
    return {
        'rank': entry.rank,
        'user_id': entry.user_id,
        'username': entry.username,
        'display_name': entry.display_name,
        'points': entry.points,
        'correct_predictions': entry.correct_predictions,
        'total_matches': entry.total_matches,
        'accuracy': entry.accuracy,
        'is_verified': entry.is_verified,
    }


@login_required
@require_POST
def submit_prediction(request):
    try:
        data = _read_body(request)
        match_id = int(data.get('match_id'))
        toss_winner_id = _optional_int(data.get('toss_winner_id'))
        match_winner_id = _optional_int(data.get('match_winner_id'))
    except (TypeError, ValueError):
        return JsonResponse({'success': False, 'message': 'Invalid prediction data.'}, status=400)

    try:
        prediction = ledger.submit(request.user.pk, match_id, toss_winner_id, match_winner_id)
    except EngineError as e:
        return _error_response(e)

    return JsonResponse({
        'success': True,
        'prediction': {
            'id': prediction.pk,
            'match_id': prediction.match_id,
            'toss_winner_id': prediction.predicted_toss_winner_id,
            'match_winner_id': prediction.predicted_match_winner_id,
        },
    })


@require_GET
def match_status(request, match_id):
    try:
        state = lifecycle.get_match_status(match_id)
    except EngineError as e:
        return _error_response(e)
    return JsonResponse({
        'match_id': state.match_id,
        'status': state.status,
        'match_date': state.match_date.isoformat(),
        'toss_winner_id': state.toss_winner_id,
        'match_winner_id': state.match_winner_id,
        'seconds_until_start': state.seconds_until_start,
        'accepting_predictions': state.accepting_predictions,
    })


@require_GET
def vote_tally(request, match_id):
    kind = request.GET.get('type', 'match')
    try:
        result = votes.tally(match_id, kind)
    except EngineError as e:
        return _error_response(e)
    percentages = result.percentages()
    return JsonResponse({
        'match_id': result.match_id,
        'type': result.kind,
        'is_open': result.is_open,
        'total': result.total,
        'teams': [
            {'team_id': team_id, 'votes': count, 'percentage': percentages[team_id]}
            for team_id, count in result.counts.items()
        ],
    })


@require_GET
def leaderboard_view(request):
    try:
        tournament_id = _optional_int(request.GET.get('tournament'))
        limit = _optional_int(request.GET.get('limit'))
        offset = _optional_int(request.GET.get('offset')) or 0
    except ValueError:
        return JsonResponse({'success': False, 'message': 'Invalid pagination parameters.'}, status=400)

    viewer_id = request.user.pk if request.user.is_authenticated else None
    try:
        page = leaderboard.rank(
            request.GET.get('timeframe', leaderboard.Timeframe.ALL_TIME),
            tournament_id=tournament_id,
            limit=limit,
            offset=offset,
            viewer_id=viewer_id,
        )
    except EngineError as e:
        return _error_response(e)

    return JsonResponse({
        'timeframe': page.timeframe,
        'tournament_id': page.tournament_id,
        'offset': page.offset,
        'limit': page.limit,
        'total': page.total,
        'entries': [_entry_json(entry) for entry in page.entries],
        'viewer': _entry_json(page.viewer),
    })


@login_required
@require_GET
def my_stats(request):
    try:
        entry = leaderboard.personal_stats(
            request.user.pk,
            request.GET.get('timeframe', leaderboard.Timeframe.ALL_TIME),
            tournament_id=_optional_int(request.GET.get('tournament')),
        )
    except ValueError:
        return JsonResponse({'success': False, 'message': 'Invalid tournament.'}, status=400)
    except EngineError as e:
        return _error_response(e)
    return JsonResponse(_entry_json(entry))


@login_required
@require_POST
def transition_match(request, match_id):
    profile = getattr(request.user, 'profile', None)
    if not profile or not profile.is_admin:
        return JsonResponse({'success': False, 'message': 'You do not have permission.'}, status=403)

    try:
        data = _read_body(request)
        toss_winner_id = _optional_int(data.get('toss_winner_id'))
        match_winner_id = _optional_int(data.get('match_winner_id'))
    except (TypeError, ValueError):
        return JsonResponse({'success': False, 'message': 'Invalid match result.'}, status=400)

    result = {field: data.get(field) for field in ('team1_score', 'team2_score', 'result_summary')}
    try:
        match = lifecycle.transition(
            match_id,
            data.get('status'),
            toss_winner_id=toss_winner_id,
            match_winner_id=match_winner_id,
            expected_status=data.get('expected_status') or None,
            result=result,
        )
    except EngineError as e:
        logger.info("Rejected transition of match %s by %s: %s", match_id, request.user.username, e.message)
        return _error_response(e)

    return JsonResponse({
        'success': True,
        'match_id': match.pk,
        'status': match.status,
        'toss_winner_id': match.toss_winner_id,
        'match_winner_id': match.match_winner_id,
    })
