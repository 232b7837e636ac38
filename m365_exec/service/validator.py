"""
Deny-list validation for script text.
Module: m365_exec/service/validator.py

A plain substring scan run before scripts are stored or executed. It is a
defense-in-depth layer only: the isolation boundary is the restricted
evaluation context built by ``sandbox.py``.
"""

from typing import Iterable, Tuple

from .models import ValidationResult

# Grouped by the kind of escape each pattern indicates.
FORBIDDEN_PATTERNS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("dynamic evaluation", ("eval(", "exec(", "compile(")),
    ("dynamic function construction", ("FunctionType(", "CodeType(")),
    ("dynamic module loading", ("__import__", "importlib", "import_module(")),
    ("process termination", ("sys.exit", "os._exit", "exit(", "quit(")),
    ("subprocess access", ("subprocess", "os.system", "os.popen", "os.spawn", "pty.spawn")),
    ("path metadata", ("__file__", "__path__", "__spec__", "__loader__")),
    (
        "reflective access",
        (
            "__builtins__",
            "__globals__",
            "__subclasses__",
            "__class__",
            "__bases__",
            "__mro__",
            "__code__",
            "__dict__",
        ),
    ),
)


def iter_patterns() -> Iterable[str]:
    for _, patterns in FORBIDDEN_PATTERNS:
        yield from patterns


class CodeValidator:
    """Scans script text for forbidden substrings."""

    def __init__(self, extra_patterns: Iterable[str] = ()) -> None:
        self.patterns = list(iter_patterns()) + list(extra_patterns)

    def validate(self, code: str) -> ValidationResult:
        """
        Check code against the deny-list.

        Args:
            code: Script text

        Returns:
            ValidationResult with one error per matched pattern
        """
        errors = [
            f"Forbidden pattern detected: {pattern}"
            for pattern in self.patterns
            if pattern in code
        ]
        return ValidationResult(valid=not errors, errors=errors)


_default_validator = CodeValidator()


def validate_code(code: str) -> ValidationResult:
    """Validate code with the default deny-list."""
    return _default_validator.validate(code)
