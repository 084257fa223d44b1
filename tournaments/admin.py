from django.contrib import admin, messages
from .models import ContestParticipant, Match, MatchStatus, Tournament
from predictions import lifecycle
from predictions.exceptions import EngineError


class ContestParticipantInline(admin.TabularInline):
    model = ContestParticipant
    extra = 0
    autocomplete_fields = ('user',)


@admin.register(Tournament)
class TournamentAdmin(admin.ModelAdmin):
    list_display = ('name', 'start_date', 'end_date', 'is_contest')
    list_filter = ('start_date', 'end_date', 'is_contest')
    search_fields = ('name', 'description')
    date_hierarchy = 'start_date'
    filter_horizontal = ('participants',)
    inlines = (ContestParticipantInline,)


@admin.register(Match)
class MatchAdmin(admin.ModelAdmin):
    list_display = ('__str__', 'tournament', 'match_date', 'status', 'toss_winner', 'match_winner')
    list_filter = ('tournament', 'status', 'match_date')
    search_fields = ('tournament__name', 'team1__name', 'team2__name', 'location')
    date_hierarchy = 'match_date'
    # Status and winners change only through the state machine.
    readonly_fields = ('status', 'toss_winner', 'match_winner')
    # Fixed once predictions exist or the match has started.
    locked_fields = ('tournament', 'team1', 'team2')
    actions = ['start_matches', 'void_matches']

    def get_readonly_fields(self, request, obj=None):
        fields = super().get_readonly_fields(request, obj)
        if obj is not None and (obj.status != MatchStatus.UPCOMING or obj.predictions.exists()):
            fields = tuple(fields) + self.locked_fields
        return fields

    def _apply(self, request, queryset, new_status):
        moved = 0
        for match in queryset:
            try:
                lifecycle.transition(match.pk, new_status, expected_status=match.status)
                moved += 1
            except EngineError as e:
                self.message_user(request, f'{match}: {e.message}', level=messages.WARNING)
        self.message_user(request, f'{moved} match(es) moved to {new_status}.')

    def start_matches(self, request, queryset):
        self._apply(request, queryset, MatchStatus.ONGOING)
    start_matches.short_description = 'Start selected matches'

    def void_matches(self, request, queryset):
        self._apply(request, queryset, MatchStatus.VOID)
    void_matches.short_description = 'Void selected matches'
