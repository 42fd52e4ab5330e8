"""Tagged results for research steps that may degrade instead of failing."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Degraded:
    """The source was unavailable or unusable; the field stays empty."""
    reason: str


@dataclass(frozen=True)
class Fatal:
    """The step hit an error that must end the run."""
    error: BaseException


Outcome = Union[Ok[Any], Degraded, Fatal]


def value_or_none(outcome: Outcome) -> Any:
    return outcome.value if isinstance(outcome, Ok) else None
