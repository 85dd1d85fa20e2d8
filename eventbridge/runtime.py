"""Outcome types imported by generated error-bridging dispatch code."""

from __future__ import annotations

import dataclasses
from typing import Generic, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


@dataclasses.dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False


@dataclasses.dataclass(frozen=True)
class Err(Generic[E]):
    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True


Outcome = Union[Ok[T], Err[E]]
