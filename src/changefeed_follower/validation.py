"""Pluggable path-segment validation for document store requests.

Rules are indexed by operation id.  The defaults reject document IDs and
attachment names beginning with ``_``, which the server reserves for its own
endpoints (``_design``, ``_local``, ``_changes``...).
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Tuple

from .errors import InvalidArgumentValueError

DOCUMENT_OPERATIONS: Tuple[str, ...] = (
    "deleteDocument",
    "getDocument",
    "getDocumentAsMixed",
    "getDocumentAsRelated",
    "getDocumentAsStream",
    "headDocument",
    "putDocument",
    "deleteAttachment",
    "getAttachment",
    "headAttachment",
    "putAttachment",
)

ATTACHMENT_OPERATIONS: Tuple[str, ...] = (
    "deleteAttachment",
    "getAttachment",
    "headAttachment",
    "putAttachment",
)


@dataclass(frozen=True)
class ValidationRule:
    path_segment: str
    error_parameter_name: str
    operation_ids: Tuple[str, ...]

    def violated_by(self, path: Mapping[str, object]) -> bool:
        value = path.get(self.path_segment)
        return isinstance(value, str) and value.startswith("_")


DOC_ID_RULE = ValidationRule("doc_id", "Document ID", DOCUMENT_OPERATIONS)
ATTACHMENT_NAME_RULE = ValidationRule(
    "attachment_name", "Attachment name", ATTACHMENT_OPERATIONS
)
DEFAULT_RULES: Tuple[ValidationRule, ...] = (DOC_ID_RULE, ATTACHMENT_NAME_RULE)


class RequestValidator:
    """Checks request path values against the rules of their operation."""

    def __init__(self, rules: Iterable[ValidationRule] = DEFAULT_RULES) -> None:
        by_operation: Dict[str, List[ValidationRule]] = {}
        for rule in rules:
            for operation_id in rule.operation_ids:
                by_operation.setdefault(operation_id, []).append(rule)
        self._rules = MappingProxyType(
            {key: tuple(value) for key, value in by_operation.items()}
        )

    @property
    def rules_by_operation(self) -> Mapping[str, Tuple[ValidationRule, ...]]:
        return self._rules

    def validate(self, operation_id: str, path: Mapping[str, object]) -> None:
        for rule in self._rules.get(operation_id, ()):
            if rule.violated_by(path):
                raise InvalidArgumentValueError(
                    f"{rule.error_parameter_name} {path[rule.path_segment]} "
                    "starts with the invalid _ character."
                )


__all__ = [
    "ATTACHMENT_NAME_RULE",
    "DEFAULT_RULES",
    "DOC_ID_RULE",
    "RequestValidator",
    "ValidationRule",
]
