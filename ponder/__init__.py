"""ponder: a small ReAct-style command-line agent."""

from .agent import Agent
from .session import Session

__all__ = ["Agent", "Session"]
