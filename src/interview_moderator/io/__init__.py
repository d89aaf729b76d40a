"""
IO module for driving interview sessions.
"""

from interview_moderator.io.console import ConsoleInterface

__all__ = ["ConsoleInterface"]
