from django.contrib import admin
from predictions.models import Prediction, PointsLedgerEntry


@admin.register(Prediction)
class PredictionAdmin(admin.ModelAdmin):
    list_display = ['id', 'user', 'match', 'predicted_toss_winner', 'predicted_match_winner',
                    'points_earned', 'locked_at', 'scored_at']
    list_filter = ['match__tournament', 'match__status', 'points_earned']
    search_fields = ['user__username', 'match__team1__name', 'match__team2__name']
    date_hierarchy = 'created_at'
    ordering = ['-created_at']
    # Picks are written only by predictions.ledger.submit.
    readonly_fields = ['user', 'match', 'predicted_toss_winner', 'predicted_match_winner',
                       'points_earned', 'toss_correct', 'match_correct', 'locked_at', 'scored_at']

    def has_add_permission(self, request):
        return False


@admin.register(PointsLedgerEntry)
class PointsLedgerEntryAdmin(admin.ModelAdmin):
    list_display = ['user', 'match', 'points', 'reason', 'created_at']
    list_filter = ['reason']
    search_fields = ['user__username']

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False
