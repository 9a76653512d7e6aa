"""Ordered ``(predicate, extractor)`` rules evaluated against one subject.

Each parser step that used to be a chain of "try this regex, else that"
is written as a list of :class:`Rule` objects. Precedence is the list
order; a matched rule with ``stop=True`` ends evaluation for the subject.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Rule(Generic[T]):
    """One extraction rule.

    Attributes:
        name: Field or step name, used for logging and claims.
        predicate: Cheap gate; the extractor only runs when it holds.
        extractor: Produces the value, or ``None`` for "did not match".
        stop: Whether a match ends evaluation of the remaining rules.
    """

    name: str
    predicate: Callable[[T], bool]
    extractor: Callable[[T], Any]
    stop: bool = True


@dataclass(frozen=True)
class RuleHit:
    """A rule that matched, with the value its extractor returned."""

    name: str
    value: Any


def apply_rules(rules: Sequence[Rule[T]], subject: T) -> list[RuleHit]:
    """Evaluate ``rules`` in order against ``subject``.

    Returns:
        Every hit, in evaluation order, up to and including the first
        stopping rule that matched.
    """
    hits: list[RuleHit] = []
    for rule in rules:
        if not rule.predicate(subject):
            continue
        value = rule.extractor(subject)
        if value is None:
            continue
        hits.append(RuleHit(rule.name, value))
        if rule.stop:
            break
    return hits


def first_hit(rules: Sequence[Rule[T]], subject: T) -> RuleHit | None:
    """The first matching rule regardless of its ``stop`` flag."""
    for rule in rules:
        if rule.predicate(subject):
            value = rule.extractor(subject)
            if value is not None:
                return RuleHit(rule.name, value)
    return None


def always(_: Any) -> bool:
    return True
