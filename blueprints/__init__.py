"""
Blueprints package for SmashLedger
Contains the JSON route blueprints for each role
"""

from .auth import auth_bp
from .organizer import organizer_bp
from .player import player_bp
from .admin import admin_bp

__all__ = ['auth_bp', 'organizer_bp', 'player_bp', 'admin_bp']
