"""
Reconcilers: map remote organizations, groups and contacts onto local
clubs, teams and players.
"""
from app.services.sync.reconcilers.base import ACTIONS, BaseReconciler, PlannedAction
from app.services.sync.reconcilers.club_reconciler import ClubReconciler
from app.services.sync.reconcilers.team_reconciler import TeamReconciler
from app.services.sync.reconcilers.player_reconciler import PlayerReconciler

__all__ = [
    "ACTIONS",
    "BaseReconciler",
    "PlannedAction",
    "ClubReconciler",
    "TeamReconciler",
    "PlayerReconciler",
]
