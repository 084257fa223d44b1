from django.urls import path
from . import views

app_name = 'predictions'

urlpatterns = [
    path('api/submit/', views.submit_prediction, name='submit_prediction'),
    path('api/matches/<int:match_id>/status/', views.match_status, name='match_status'),
    path('api/matches/<int:match_id>/votes/', views.vote_tally, name='vote_tally'),
    path('api/matches/<int:match_id>/transition/', views.transition_match, name='transition_match'),
    path('api/leaderboard/', views.leaderboard_view, name='leaderboard'),
    path('api/me/', views.my_stats, name='my_stats'),
]
