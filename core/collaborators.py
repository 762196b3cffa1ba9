"""
External collaborators — the seams the engine talks through.

  MessageTransport      send text to a contact, return a delivery id
  ResponseClassifier    map a free-text reply to one of a step's labels
  TagStore              read a contact's tags, persist rule mutations
  CalendarCollaborator  create a calendar event for a booking

Concrete carriers, NLU models and calendars live outside the engine.
InMemoryTagStore and LabelMatchClassifier cover development and tests.
"""
from __future__ import annotations

import abc
import asyncio
import structlog
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel

from models.schemas import ContactTagView, DripMessage, Step, TagMutation

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Messaging
# ──────────────────────────────────────────────────────────────

class MessageTransport(abc.ABC):

    @abc.abstractmethod
    async def send(self, contact_id: str, text: str, metadata: Optional[dict[str, Any]] = None) -> str:
        """Deliver `text` to the contact. Returns the carrier's delivery id."""
        ...

    async def close(self) -> None:
        pass


# ──────────────────────────────────────────────────────────────
#  Reply classification
# ──────────────────────────────────────────────────────────────

class ClassificationResult(BaseModel):
    response_label: Optional[str] = None              # None → reply did not pick a branch
    answered_questions: dict[str, Any] = {}
    drip_override: Optional[list[DripMessage]] = None  # replaces the next step's drips
    confidence: float = 1.0


class ResponseClassifier(abc.ABC):

    @abc.abstractmethod
    async def classify(self, reply_text: str, step: Step) -> ClassificationResult:
        ...


class LabelMatchClassifier(ResponseClassifier):
    """
    Picks the step label equal to the reply (case-insensitive), else the
    first label the reply contains. Good enough for button-style replies.
    """

    async def classify(self, reply_text: str, step: Step) -> ClassificationResult:
        text = (reply_text or "").strip().casefold()
        if not text:
            return ClassificationResult(confidence=0.0)
        exact = step.find_response(text)
        if exact:
            return ClassificationResult(response_label=exact.label)
        for branch in step.responses:
            if branch.label.casefold() in text:
                return ClassificationResult(response_label=branch.label, confidence=0.5)
        return ClassificationResult(confidence=0.0)


# ──────────────────────────────────────────────────────────────
#  Tags
# ──────────────────────────────────────────────────────────────

class TagStore(abc.ABC):

    @abc.abstractmethod
    async def get_tags(self, contact_id: str) -> ContactTagView:
        ...

    @abc.abstractmethod
    async def apply(self, contact_id: str, mutations: list[TagMutation]) -> ContactTagView:
        """Persist a batch of mutations in order. Returns the resulting view."""
        ...


class InMemoryTagStore(TagStore):
    """Dict-backed tag store for development and testing."""

    def __init__(self):
        self._tags: dict[str, list[str]] = {}
        self._primary: dict[str, Optional[str]] = {}
        self._lock = asyncio.Lock()

    async def get_tags(self, contact_id: str) -> ContactTagView:
        return ContactTagView(
            contact_id=contact_id,
            tags=list(self._tags.get(contact_id, [])),
            primary_tag=self._primary.get(contact_id),
        )

    async def apply(self, contact_id: str, mutations: list[TagMutation]) -> ContactTagView:
        async with self._lock:
            tags = self._tags.setdefault(contact_id, [])
            for m in mutations:
                for tag in m.removed_tags:
                    if tag in tags:
                        tags.remove(tag)
                for tag in m.added_tags:
                    if tag not in tags:
                        tags.append(tag)
                self._primary[contact_id] = m.primary_tag
        logger.debug("tags_applied", contact_id=contact_id, mutations=len(mutations))
        return await self.get_tags(contact_id)

    async def set_tags(self, contact_id: str, tags: list[str], primary_tag: Optional[str] = None) -> None:
        self._tags[contact_id] = list(dict.fromkeys(tags))
        self._primary[contact_id] = primary_tag


# ──────────────────────────────────────────────────────────────
#  Calendar
# ──────────────────────────────────────────────────────────────

class CalendarCollaborator(abc.ABC):

    @abc.abstractmethod
    async def create_event(
        self,
        contact_id: str,
        start: datetime,
        duration_minutes: int = 30,
        title: str = "",
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        """Create the event and return its id."""
        ...
