"""Label selector compilation and matching.

A ``LabelSelector`` is validated once by :func:`compile_selector` into a
:class:`Selector`, which then answers ``matches(labels)`` without further
checks.  :func:`parse_selector_string` accepts the textual form used on the
command line::

    env=prod,tier in (web,api),!legacy,region
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from cluster_collector.models import (
    LabelSelector,
    LabelSelectorRequirement,
    SelectorOperator,
)

_NAME_RE = re.compile(r"^[A-Za-z0-9]([-A-Za-z0-9_.]{0,61}[A-Za-z0-9])?$")
_PREFIX_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")
_VALUE_RE = re.compile(r"^([A-Za-z0-9]([-A-Za-z0-9_.]{0,61}[A-Za-z0-9])?)?$")
_SET_EXPR_RE = re.compile(r"^(?P<key>[^\s!=()]+)\s+(?P<op>in|notin)\s+\((?P<values>[^)]*)\)$")


class SelectorError(Exception):
    """Raised when a label selector is malformed."""


@dataclass(frozen=True)
class Requirement:
    key: str
    operator: SelectorOperator
    values: frozenset[str]

    def matches(self, labels: dict[str, str]) -> bool:
        if self.operator == SelectorOperator.EXISTS:
            return self.key in labels
        if self.operator == SelectorOperator.DOES_NOT_EXIST:
            return self.key not in labels
        if self.operator == SelectorOperator.IN:
            return self.key in labels and labels[self.key] in self.values
        # NotIn also matches when the key is absent
        return self.key not in labels or labels[self.key] not in self.values


@dataclass(frozen=True)
class Selector:
    """A validated selector. Every requirement must match."""

    requirements: tuple[Requirement, ...]

    def matches(self, labels: dict[str, str]) -> bool:
        return all(r.matches(labels) for r in self.requirements)

    @property
    def empty(self) -> bool:
        return not self.requirements


def validate_key(key: str) -> None:
    """Check a label key: optional DNS-subdomain prefix, then a name."""
    prefix, sep, name = key.rpartition("/")
    if sep:
        if not prefix or len(prefix) > 253 or not _PREFIX_RE.match(prefix):
            raise SelectorError(f"Invalid label key prefix: {key!r}")
    if not name or not _NAME_RE.match(name):
        raise SelectorError(f"Invalid label key: {key!r}")


def validate_value(value: str) -> None:
    if len(value) > 63 or not _VALUE_RE.match(value):
        raise SelectorError(f"Invalid label value: {value!r}")


def _compile_requirement(req: LabelSelectorRequirement) -> Requirement:
    validate_key(req.key)
    try:
        operator = SelectorOperator(req.operator)
    except ValueError:
        raise SelectorError(
            f"Invalid operator {req.operator!r} for key {req.key!r}"
        ) from None

    if operator in (SelectorOperator.IN, SelectorOperator.NOT_IN):
        if not req.values:
            raise SelectorError(
                f"Operator {operator} for key {req.key!r} requires at least one value"
            )
    elif req.values:
        raise SelectorError(
            f"Operator {operator} for key {req.key!r} does not take values"
        )

    for value in req.values:
        validate_value(value)
    return Requirement(key=req.key, operator=operator, values=frozenset(req.values))


def compile_selector(selector: LabelSelector) -> Selector:
    """Validate a ``LabelSelector`` and return a matcher.

    Raises:
        SelectorError: If any key, value or operator is invalid.
    """
    requirements: list[Requirement] = []
    for key in sorted(selector.match_labels):
        value = selector.match_labels[key]
        validate_key(key)
        validate_value(value)
        requirements.append(
            Requirement(key=key, operator=SelectorOperator.IN, values=frozenset([value]))
        )
    for expr in selector.match_expressions:
        requirements.append(_compile_requirement(expr))
    return Selector(requirements=tuple(requirements))


def _split_terms(text: str) -> list[str]:
    """Split on commas that are not inside a parenthesized value list."""
    terms: list[str] = []
    depth = 0
    current: list[str] = []
    for ch in text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise SelectorError(f"Unbalanced parentheses in selector: {text!r}")
        if ch == "," and depth == 0:
            terms.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    if depth != 0:
        raise SelectorError(f"Unbalanced parentheses in selector: {text!r}")
    terms.append("".join(current).strip())
    return terms


def parse_selector_string(text: str) -> LabelSelector:
    """Parse the textual selector syntax into a ``LabelSelector``.

    Supported terms: ``k=v``, ``k==v``, ``k!=v``, ``k in (a,b)``,
    ``k notin (a,b)``, ``k`` (exists) and ``!k`` (does not exist).
    An empty string selects everything.

    Raises:
        SelectorError: If a term is malformed or fails key/value validation.
    """
    selector = LabelSelector()
    if not text.strip():
        return selector

    for term in _split_terms(text):
        if not term:
            raise SelectorError(f"Empty term in selector: {text!r}")

        set_match = _SET_EXPR_RE.match(term)
        if set_match:
            op = SelectorOperator.IN if set_match["op"] == "in" else SelectorOperator.NOT_IN
            values = [v.strip() for v in set_match["values"].split(",") if v.strip()]
            selector.match_expressions.append(
                LabelSelectorRequirement(key=set_match["key"], operator=op, values=values)
            )
        elif "!=" in term:
            key, _, value = term.partition("!=")
            selector.match_expressions.append(
                LabelSelectorRequirement(
                    key=key.strip(), operator=SelectorOperator.NOT_IN, values=[value.strip()],
                )
            )
        elif "=" in term:
            key, _, value = term.partition("==") if "==" in term else term.partition("=")
            selector.match_labels[key.strip()] = value.strip()
        elif term.startswith("!"):
            selector.match_expressions.append(
                LabelSelectorRequirement(
                    key=term[1:].strip(), operator=SelectorOperator.DOES_NOT_EXIST,
                )
            )
        else:
            selector.match_expressions.append(
                LabelSelectorRequirement(key=term, operator=SelectorOperator.EXISTS)
            )

    compile_selector(selector)
    return selector
