"""
State management for pydfgram.

This module handles saving and loading session settings across runs.
"""

from .state_manager import StateManager, get_default_state_file

__all__ = ['StateManager', 'get_default_state_file']
