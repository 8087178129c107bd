"""Collaborator implementations."""

from .base import Collaborator, CollaboratorResult
from .http import HTTPCollaborator
from .mock import MockCollaborator

__all__ = ["Collaborator", "CollaboratorResult", "HTTPCollaborator", "MockCollaborator", "get_collaborator"]


def get_collaborator() -> Collaborator:
    """Build the collaborator selected by ``RAG_COLLABORATOR*`` variables."""

    from ragdigest.config import CollaboratorSettings

    settings = CollaboratorSettings.from_env()
    if settings.use_mock or not settings.base_url:
        return MockCollaborator()
    return HTTPCollaborator(
        settings.base_url,
        token=settings.token,
        timeout=settings.timeout_seconds,
    )
