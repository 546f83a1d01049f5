"""Explicit success/failure values for sandbox and parser operations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E", bound=Exception)


@dataclass(slots=True, frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value


@dataclass(slots=True, frozen=True)
class Err(Generic[E]):
    """Failure carrying the error instance that would otherwise be raised."""

    error: E

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self):
        raise self.error

    def unwrap_or(self, default):
        return default

    @property
    def message(self) -> str:
        return str(self.error)


Result = Union[Ok[T], Err[Exception]]

__all__ = ["Err", "Ok", "Result"]
