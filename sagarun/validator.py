"""
DAG validation.

Checks run in a single pass and accumulate every violation so an author can
fix a spec in one edit:

1. ``nodes`` is present and non-empty
2. every node entry is a mapping
3. every node has a non-empty ``id``
4. every node has a non-empty ``run``
5. every ``run`` and ``compensation`` is a well-formed smart code,
   and ``when``, if present, is a string
6. node ids are unique
7. ``depends_on`` only names known nodes
8. transaction boundaries only name known nodes
"""

from dataclasses import dataclass, field

from sagarun.errors import ValidationError
from sagarun.schemas import OrchestrationSpec, is_valid_smart_code


@dataclass
class ValidationReport:
    """Result of validating a spec."""
    valid: bool
    errors: list[str] = field(default_factory=list)

    def raise_for_errors(self, smart_code: str = "") -> None:
        """Raise ValidationError if the report carries any errors."""
        if not self.valid:
            label = f"Invalid orchestration spec {smart_code}".rstrip()
            raise ValidationError(label, self.errors)

    def to_dict(self) -> dict:
        return {"valid": self.valid, "errors": list(self.errors)}


def validate(spec: OrchestrationSpec) -> ValidationReport:
    """Validate a spec's structure. Never raises for spec problems."""
    errors: list[str] = []

    if not spec.nodes:
        errors.append("Spec must define at least one node")
        return ValidationReport(valid=False, errors=errors)

    for index, node in enumerate(spec.nodes):
        if node.malformed:
            errors.append(f"Node at index {index} is not a mapping")
            continue
        label = node.id or f"#{index}"
        if not node.id:
            errors.append(f"Node at index {index} is missing an id")
        if not node.run:
            errors.append(f"Node '{label}' is missing a run procedure")
        elif not is_valid_smart_code(node.run):
            errors.append(f"Node '{label}' has invalid run smart code: {node.run}")
        if node.compensation is not None and not is_valid_smart_code(node.compensation):
            errors.append(f"Node '{label}' has invalid compensation smart code: {node.compensation}")
        if node.when is not None and not isinstance(node.when, str):
            errors.append(f"Node '{label}' has a non-string when condition: {node.when!r}")

    seen: set[str] = set()
    for node in spec.nodes:
        if not node.id:
            continue
        if node.id in seen:
            errors.append(f"Duplicate node id: {node.id}")
        seen.add(node.id)

    for node in spec.nodes:
        for dep in node.depends_on:
            if dep not in seen:
                errors.append(f"Node '{node.id or '?'}' depends on unknown node '{dep}'")

    for boundary in spec.transaction_boundaries:
        for node_id in boundary.nodes:
            if node_id not in seen:
                errors.append(
                    f"Transaction boundary '{boundary.name}' references unknown node '{node_id}'"
                )

    return ValidationReport(valid=not errors, errors=errors)
