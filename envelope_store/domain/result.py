"""Explicit success/failure values.

Service operations return ``Ok`` or ``Err`` instead of raising. Library
exceptions are caught at the boundary that owns them and converted into
error values from ``envelope_store.errors``.
"""
from dataclasses import dataclass
from typing import Any, Callable, Generic, NoReturn, TypeVar, Union

T = TypeVar("T")
U = TypeVar("U")
E = TypeVar("E")
F = TypeVar("F")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_err(self) -> NoReturn:
        raise ValueError(f"Called unwrap_err on Ok: {self.value!r}")

    def unwrap_or(self, default: Any) -> T:
        return self.value

    def map(self, fn: Callable[[T], U]) -> "Ok[U]":
        return Ok(fn(self.value))

    def map_err(self, fn: Callable[[Any], Any]) -> "Ok[T]":
        return self

    def and_then(self, fn: Callable[[T], "Result[U, Any]"]) -> "Result[U, Any]":
        return fn(self.value)


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> NoReturn:
        if isinstance(self.error, BaseException):
            raise self.error
        raise ValueError(f"Called unwrap on Err: {self.error!r}")

    def unwrap_err(self) -> E:
        return self.error

    def unwrap_or(self, default: U) -> U:
        return default

    def map(self, fn: Callable[[Any], Any]) -> "Err[E]":
        return self

    def map_err(self, fn: Callable[[E], F]) -> "Err[F]":
        return Err(fn(self.error))

    def and_then(self, fn: Callable[[Any], Any]) -> "Err[E]":
        return self


Result = Union[Ok[T], Err[E]]
