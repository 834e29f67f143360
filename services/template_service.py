# services/template_service.py - Test template persistence orchestration
#
# Thin layer: validates input, delegates to repository.

from typing import TYPE_CHECKING, Any

from domain.models import AccessLevel, TestSection
from evaluation_service import clear_measurements, validate_template_structure
from permission_service import require_permission

if TYPE_CHECKING:
    from database import MaintenanceRepository
    from services.identity import Caller


def _parse_structure(structure: list[Any]) -> list[TestSection]:
    """Accept sections or their dict form. Raises ValueError on a bad design."""
    sections = [s if isinstance(s, TestSection) else TestSection.from_dict(s) for s in structure]
    problems = validate_template_structure(sections)
    if problems:
        raise ValueError("; ".join(problems))
    # A template is a design; measurements belong to results
    return clear_measurements(sections)


def create_template(
    repo: "MaintenanceRepository",
    caller: "Caller",
    name: str,
    structure: list[Any],
    description: str = "",
) -> str:
    """Validate and create template. Returns new template ID. Raises ValueError on invalid input."""
    require_permission(caller, "design_templates", AccessLevel.EDIT)
    if not (name or "").strip():
        raise ValueError("Template name is required")
    sections = _parse_structure(structure)
    with repo.transaction():
        return repo.create_template(name.strip(), description or "", sections)


def update_template(
    repo: "MaintenanceRepository",
    caller: "Caller",
    template_id: str,
    name: str,
    structure: list[Any],
    description: str = "",
) -> None:
    """Validate and update template. Stored results keep the structure they were recorded with."""
    require_permission(caller, "design_templates", AccessLevel.EDIT)
    if not (name or "").strip():
        raise ValueError("Template name is required")
    sections = _parse_structure(structure)
    with repo.transaction():
        repo.update_template(template_id, name.strip(), description or "", sections)


def delete_template(repo: "MaintenanceRepository", caller: "Caller", template_id: str) -> None:
    """Delete template by ID. Raises ValueError if results were recorded against it."""
    require_permission(caller, "design_templates", AccessLevel.EDIT)
    with repo.transaction():
        repo.delete_template(template_id)
