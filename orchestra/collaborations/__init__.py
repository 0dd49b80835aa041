"""Collaborations and the registry that groups interactions under them."""

from orchestra.collaborations.collaboration import Collaboration
from orchestra.collaborations.registry import CollaborationRegistry
from orchestra.collaborations.schemas import CollaborationType

__all__ = ["Collaboration", "CollaborationRegistry", "CollaborationType"]
