"""Gap-tolerant, collision-free document numbering.

Each namespace keeps its last issued value in the ``Counters`` collection as
``{"value": <int>}``. Numbers are only ever handed out after the store has
confirmed the compare-and-swap that claimed them, so two concurrent callers
can never receive the same number. A number that is claimed but never used
(because the caller later fails) is simply skipped.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Union

from . import data_manager, log
from .constants import Collection, SequenceName
from .errors import SequenceUnavailableError, ValidationError


@dataclass(frozen=True)
class SequenceNamespace:
    """Numbering rules of one independent sequence.

    Attributes:
        name (str): Counter id in the ``Counters`` collection.
        floor (int): Value a fresh counter starts from; the first issued
            number is ``floor + 1``.
        ceiling (int | None): Highest number ever issued. Numbering wraps back
            to ``floor + 1`` once exceeded.
        suffix (str): Appended to the number when formatting.
    """

    name: str
    floor: int = 999
    ceiling: Optional[int] = None
    suffix: str = ""

    def coerce(self, raw: Any) -> int:
        """Interpret a stored value, treating missing or garbage data as the floor."""

        if isinstance(raw, bool) or raw is None:
            return self.floor
        try:
            return int(raw)
        except (TypeError, ValueError):
            log.warning("Counter '%s' holds invalid value %r; restarting from %d", self.name, raw, self.floor)
            return self.floor

    def advance(self, raw: Any) -> int:
        candidate = max(self.coerce(raw), self.floor) + 1
        if self.ceiling is not None and candidate > self.ceiling:
            log.info("Counter '%s' passed %d; wrapping to %d", self.name, self.ceiling, self.floor + 1)
            return self.floor + 1
        return candidate

    def validate(self, value: int) -> None:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"Counter value must be an integer, got {value!r}")
        if value < self.floor or (self.ceiling is not None and value > self.ceiling):
            upper = self.ceiling if self.ceiling is not None else "unbounded"
            raise ValidationError(
                f"Counter '{self.name}' must stay within [{self.floor}, {upper}], got {value}"
            )

    def format(self, value: int) -> str:
        return f"{value}{self.suffix}"


DEFAULT_NAMESPACES: Dict[str, SequenceNamespace] = {
    SequenceName.INVOICE.value: SequenceNamespace(SequenceName.INVOICE.value, ceiling=99999),
    SequenceName.SUPPLIER_INVOICE.value: SequenceNamespace(SequenceName.SUPPLIER_INVOICE.value, suffix="-S"),
    SequenceName.CUSTOMER_RETURN.value: SequenceNamespace(SequenceName.CUSTOMER_RETURN.value, suffix="-R"),
    SequenceName.SUPPLIER_RETURN.value: SequenceNamespace(SequenceName.SUPPLIER_RETURN.value, suffix="-SR"),
}


class SequenceCounter:
    """Issue document numbers from the counters kept in a record store."""

    def __init__(
        self,
        store: data_manager.RecordStore,
        namespaces: Optional[Iterable[SequenceNamespace]] = None,
        *,
        max_attempts: int = data_manager.DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = data_manager.DEFAULT_BACKOFF_BASE,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        if namespaces is None:
            self.namespaces = dict(DEFAULT_NAMESPACES)
        else:
            self.namespaces = {namespace.name: namespace for namespace in namespaces}
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self._sleep = sleep

    def namespace(self, name: Union[str, SequenceName]) -> SequenceNamespace:
        key = name.value if isinstance(name, SequenceName) else str(name)
        try:
            return self.namespaces[key]
        except KeyError:
            raise ValidationError(f"Unknown sequence: {key}") from None

    @staticmethod
    def _path(namespace: SequenceNamespace) -> str:
        return f"{Collection.COUNTERS.value}/{namespace.name}/value"

    def next_value(self, name: Union[str, SequenceName]) -> int:
        """Claim the next number of ``name`` and return it unformatted.

        Raises:
            SequenceUnavailableError: If the claim could not be confirmed
                within ``max_attempts`` tries.
        """

        namespace = self.namespace(name)
        try:
            _, issued = data_manager.compare_and_swap(
                self.store,
                self._path(namespace),
                lambda document: namespace.advance(None if document is None else document.get("value")),
                max_attempts=self.max_attempts,
                backoff_base=self.backoff_base,
                sleep=self._sleep,
            )
        except data_manager.ContentionError as exc:
            raise SequenceUnavailableError(
                f"Could not issue a '{namespace.name}' number after {exc.attempts} attempts"
            ) from exc
        log.info("Issued %s number %s", namespace.name, issued)
        return issued

    def next(self, name: Union[str, SequenceName]) -> str:
        """Claim the next number of ``name`` and return it formatted."""

        namespace = self.namespace(name)
        return namespace.format(self.next_value(namespace.name))

    def peek(self, name: Union[str, SequenceName]) -> int:
        """Return the last issued value without claiming anything."""

        namespace = self.namespace(name)
        document = self.store.get(Collection.COUNTERS, namespace.name)
        return namespace.coerce(None if document is None else document.get("value"))

    def reset(self, name: Union[str, SequenceName], value: Optional[int] = None) -> int:
        """Administratively set the last issued value; ``None`` means the floor.

        Raises:
            ValidationError: If ``value`` is outside the namespace range.
            SequenceUnavailableError: If the write could not be confirmed.
        """

        namespace = self.namespace(name)
        target = namespace.floor if value is None else value
        namespace.validate(target)
        try:
            data_manager.compare_and_swap(
                self.store,
                self._path(namespace),
                lambda document: target,
                max_attempts=self.max_attempts,
                backoff_base=self.backoff_base,
                sleep=self._sleep,
            )
        except data_manager.ContentionError as exc:
            raise SequenceUnavailableError(f"Could not reset '{namespace.name}'") from exc
        log.warning("Counter '%s' reset to %d", namespace.name, target)
        return target

    def initialize(self, name: Union[str, SequenceName]) -> bool:
        """Seed the counter with its floor unless it already exists."""

        namespace = self.namespace(name)
        if self.store.get(Collection.COUNTERS, namespace.name) is not None:
            return False
        seeded = self.store.conditional_update(self._path(namespace), None, namespace.floor)
        if seeded:
            log.info("Initialised counter '%s' at %d", namespace.name, namespace.floor)
        return seeded

    def initialize_all(self) -> Dict[str, bool]:
        return {name: self.initialize(name) for name in self.namespaces}

    def format(self, name: Union[str, SequenceName], value: int) -> str:
        return self.namespace(name).format(value)
