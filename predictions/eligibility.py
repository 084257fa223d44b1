from django.db.models import F, Q

from .models import Prediction


def eligible_predictions(queryset):
    """
    Restrict a Prediction queryset to rows that count publicly: verified
    users, and for contest tournaments only users currently on the
    tournament's participant list.
    """
    contest_member_rows = Prediction.objects.filter(
        match__tournament__contest_participants__user=F('user')
    ).values('pk')
    return queryset.filter(user__profile__is_verified=True).filter(
        Q(match__tournament__is_contest=False) | Q(pk__in=contest_member_rows)
    )
