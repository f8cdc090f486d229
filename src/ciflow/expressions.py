"""Typed `${{ namespace.key }}` references and step run conditions.

Definitions only ever reference values from an explicit binding context
(matrix axes, env, event metadata). Templates are parsed once at load time
into literal and reference segments so that every reference can be checked
against the declared matrix axes before a run exists.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping, Tuple, Union

from .errors import InvalidExpression

_EXPR = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")
_REF = re.compile(r"^([A-Za-z_][A-Za-z0-9_-]*)\.([A-Za-z_][A-Za-z0-9_.-]*)$")

# namespaces a template may reference
NAMESPACES = frozenset({"matrix", "env", "github", "event", "workflow", "job"})


class StepCondition(str, Enum):
    """When a step runs, relative to earlier outcomes in its JobInstance."""

    SUCCESS = "success"
    ALWAYS = "always"
    FAILURE = "failure"


@dataclass(frozen=True)
class Reference:
    namespace: str
    key: str

    def __str__(self) -> str:
        return f"{self.namespace}.{self.key}"


Segment = Union[str, Reference]


@dataclass(frozen=True)
class Expression:
    """A parsed template: literal text interleaved with references."""

    source: str
    segments: Tuple[Segment, ...]

    @property
    def references(self) -> Tuple[Reference, ...]:
        return tuple(s for s in self.segments if isinstance(s, Reference))

    @property
    def is_literal(self) -> bool:
        return not self.references

    def render(self, context: Mapping[str, Mapping[str, Any]]) -> str:
        """
        Substitute references from `context`.

        Missing keys render as an empty string, the way CI systems treat
        unset contexts. Namespaces are validated at parse time.
        """
        out = []
        for seg in self.segments:
            if isinstance(seg, Reference):
                value = context.get(seg.namespace, {}).get(seg.key)
                out.append(scalar_text(value))
            else:
                out.append(seg)
        return "".join(out)

    def __str__(self) -> str:
        return self.source


def parse(text: Any) -> Expression:
    """Parse a template string. Non-string scalars become literals."""
    if not isinstance(text, str):
        return Expression(source=scalar_text(text), segments=(scalar_text(text),))

    segments: list[Segment] = []
    pos = 0
    for m in _EXPR.finditer(text):
        if m.start() > pos:
            segments.append(text[pos:m.start()])
        segments.append(_parse_reference(m.group(1), text))
        pos = m.end()
    if pos < len(text):
        segments.append(text[pos:])
    return Expression(source=text, segments=tuple(segments))


def _parse_reference(body: str, source: str) -> Reference:
    m = _REF.match(body)
    if not m:
        raise InvalidExpression(
            f"Unsupported expression '${{{{ {body} }}}}' in {source!r}: "
            "only 'namespace.key' references are allowed"
        )
    namespace, key = m.group(1), m.group(2)
    if namespace not in NAMESPACES:
        raise InvalidExpression(
            f"Unknown namespace '{namespace}' in {source!r}. "
            f"Known namespaces: {sorted(NAMESPACES)}"
        )
    return Reference(namespace=namespace, key=key)


def check_matrix_references(
    expressions: Iterable[Expression],
    axes: Iterable[str],
    where: str,
) -> None:
    """Reject `matrix.X` references to axes the job does not declare."""
    declared = set(axes)
    for expr in expressions:
        for ref in expr.references:
            if ref.namespace == "matrix" and ref.key not in declared:
                raise InvalidExpression(
                    f"{where}: '{expr.source}' references undeclared matrix axis "
                    f"'{ref.key}'. Declared axes: {sorted(declared)}"
                )


def parse_condition(value: Any) -> StepCondition:
    """
    Parse a step `if:` value.

    Accepts the bare status functions with or without call parentheses and
    an optional `${{ }}` wrapper: ``always``, ``always()``, ``${{ failure() }}``.
    """
    if value is None:
        return StepCondition.SUCCESS
    text = str(value).strip()
    m = _EXPR.fullmatch(text)
    if m:
        text = m.group(1).strip()
    if text.endswith("()"):
        text = text[:-2].strip()
    try:
        return StepCondition(text.lower())
    except ValueError:
        raise InvalidExpression(
            f"Unsupported step condition {value!r}; "
            f"expected one of {[c.value for c in StepCondition]}"
        ) from None


def scalar_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


