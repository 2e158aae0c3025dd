from __future__ import annotations

from threading import Lock
from typing import Dict, Protocol

from sqlalchemy.orm import sessionmaker

from storyreel.models.domain import Storyboard, utcnow
from storyreel.storage.database import StoryboardRow


class StoryboardRepository(Protocol):
    def get(self, storyboard_id: str, user_id: str | None = None) -> Storyboard | None: ...

    def save(self, storyboard: Storyboard) -> Storyboard: ...


class InMemoryStoryboardRepository:
    def __init__(self) -> None:
        self._storyboards: Dict[str, Storyboard] = {}
        self._lock = Lock()

    def save(self, storyboard: Storyboard) -> Storyboard:
        storyboard.updated_at = utcnow()
        with self._lock:
            self._storyboards[storyboard.id] = storyboard.model_copy(deep=True)
        return storyboard

    def get(self, storyboard_id: str, user_id: str | None = None) -> Storyboard | None:
        with self._lock:
            storyboard = self._storyboards.get(storyboard_id)
            if storyboard is None or (user_id and storyboard.user_id != user_id):
                return None
            return storyboard.model_copy(deep=True)


class SqlStoryboardRepository:
    """Keeps each storyboard as one JSON document in the job database."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._sessions = session_factory

    def save(self, storyboard: Storyboard) -> Storyboard:
        storyboard.updated_at = utcnow()
        document = storyboard.model_dump(mode="json")
        with self._sessions() as session:
            row = session.get(StoryboardRow, storyboard.id)
            if row is None:
                session.add(
                    StoryboardRow(
                        id=storyboard.id,
                        user_id=storyboard.user_id,
                        document=document,
                        updated_at=storyboard.updated_at,
                    )
                )
            else:
                row.user_id = storyboard.user_id
                row.document = document
                row.updated_at = storyboard.updated_at
            session.commit()
        return storyboard

    def get(self, storyboard_id: str, user_id: str | None = None) -> Storyboard | None:
        with self._sessions() as session:
            row = session.get(StoryboardRow, storyboard_id)
            if row is None or (user_id and row.user_id != user_id):
                return None
            return Storyboard.model_validate(row.document)
