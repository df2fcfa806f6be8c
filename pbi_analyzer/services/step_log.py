"""Append-only step trail of an autofix session."""

import logging
import threading
from typing import Any, List, Optional, Type

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from pbi_analyzer.database import Base, utcnow
from pbi_analyzer.exceptions import Cancelled
from pbi_analyzer.models.fix_session import FixSession, FixSessionStep

logger = logging.getLogger(__name__)

EVENT_TYPES = ("reasoning", "tool_call", "tool_result", "message", "error")


class StepLog:
    """
    Single-writer event log for one session.

    Each append commits on its own, so readers see steps as soon as they are
    written. Step numbers start at 1 and never skip. Single-finding sessions
    and bulk sessions keep their trails in separate tables; ``session_model``
    and ``step_model`` select the pair.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        session_id: str,
        session_model: Type[Base] = FixSession,
        step_model: Type[Base] = FixSessionStep,
    ):
        self._session_factory = session_factory
        self.session_id = session_id
        self.session_model = session_model
        self.step_model = step_model
        self._lock = threading.Lock()
        self._next_number: Optional[int] = None

    @property
    def count(self) -> int:
        with self._lock:
            if self._next_number is None:
                with self._session_factory() as db:
                    self._next_number = _last_step_number(db, self.step_model, self.session_id) + 1
            return self._next_number - 1

    def append(self, event_type: str, content: Any) -> int:
        """
        Append a step.

        Args:
            event_type: One of EVENT_TYPES
            content: Text or JSON-serializable payload

        Returns:
            The new step number

        Raises:
            Cancelled: If the session row no longer exists
        """
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown step event type {event_type}")

        with self._lock:
            with self._session_factory() as db:
                if db.get(self.session_model, self.session_id) is None:
                    raise Cancelled(f"Fix session {self.session_id} was deleted")
                if self._next_number is None:
                    self._next_number = _last_step_number(db, self.step_model, self.session_id) + 1

                number = self._next_number
                db.add(
                    self.step_model(
                        session_id=self.session_id,
                        step_number=number,
                        event_type=event_type,
                        content=content,
                        timestamp=utcnow(),
                    )
                )
                db.commit()
                self._next_number = number + 1

        logger.debug(f"Session {self.session_id} step {number}: {event_type}")
        return number


def _last_step_number(db: Session, step_model: Type[Base], session_id: str) -> int:
    last = db.query(func.max(step_model.step_number)).filter(step_model.session_id == session_id).scalar()
    return last or 0


def read_steps(db: Session, session_id: str, after: int = 0, step_model: Type[Base] = FixSessionStep) -> List[Any]:
    """Steps with a number greater than ``after``, in order."""
    return (
        db.query(step_model)
        .filter(step_model.session_id == session_id, step_model.step_number > after)
        .order_by(step_model.step_number)
        .all()
    )
