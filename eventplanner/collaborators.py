"""Boundaries to external services consumed by the pipeline."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel

from eventplanner.models import CanonicalEvent


class AgeVerdict(BaseModel):
    suitable: bool
    reason: str = ""
    extracted_time: Optional[str] = None


class AgeClassifier(ABC):
    """Age-appropriateness classifier that can also pull a time of day out of free text."""

    @abstractmethod
    def evaluate_batch(self, events: Sequence[CanonicalEvent], child_ages: List[int]) -> Dict[str, AgeVerdict]:
        """
        Returns verdicts keyed by event id. Events missing from the result fall
        back to the declared age range. Raises ClassifierUnavailableError (or any
        error) when the service cannot be reached.
        """


class CalendarCheck(BaseModel):
    has_conflict: bool = False
    has_warning: bool = False
    detail: Optional[str] = None


class CalendarChecker(ABC):
    """Looks a start time up against the household calendars."""

    @abstractmethod
    def check(self, start: datetime) -> CalendarCheck:
        """has_conflict blocks the primary calendar, has_warning is an advisory clash on another."""
