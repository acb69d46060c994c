"""Variable interpolation and condition evaluation."""

from automation_engine.template.conditions import evaluate_condition, is_truthy
from automation_engine.template.resolver import (
    extract_references,
    get_path,
    resolve,
    root_identifier,
)

__all__ = [
    "evaluate_condition",
    "is_truthy",
    "extract_references",
    "get_path",
    "resolve",
    "root_identifier",
]
