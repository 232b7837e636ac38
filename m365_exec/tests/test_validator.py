"""
Tests for the deny-list code validator.

Module: m365_exec/tests/test_validator.py
"""

import pytest

from m365_exec.service.validator import CodeValidator, iter_patterns, validate_code


class TestCodeValidator:
    """Test suite for validate_code."""

    def test_clean_code_is_valid(self) -> None:
        """Test that ordinary capability code passes."""
        result = validate_code(
            'messages = await m365.mail.list(top=10)\nreturn len(messages["value"])'
        )

        assert result.valid is True
        assert result.errors == []

    @pytest.mark.parametrize(
        "code,pattern",
        [
            ("return eval('1 + 1')", "eval("),
            ("exec('x = 1')", "exec("),
            ("m = __import__('os')", "__import__"),
            ("sys.exit(1)", "sys.exit"),
            ("subprocess.run(['ls'])", "subprocess"),
            ("return __file__", "__file__"),
            ("return ().__class__", "__class__"),
        ],
    )
    def test_forbidden_pattern_detected(self, code: str, pattern: str) -> None:
        """Test that each kind of escape hatch is reported by pattern."""
        result = validate_code(code)

        assert result.valid is False
        assert f"Forbidden pattern detected: {pattern}" in result.errors

    def test_reports_every_match(self) -> None:
        """Test that all matched patterns are listed."""
        result = validate_code("eval(x)\nimportlib.reload(m)\nos.system('ls')")

        assert result.valid is False
        assert "Forbidden pattern detected: eval(" in result.errors
        assert "Forbidden pattern detected: importlib" in result.errors
        assert "Forbidden pattern detected: os.system" in result.errors

    def test_substring_scan_ignores_context(self) -> None:
        """Test that patterns inside strings are still reported."""
        result = validate_code('log.info("never call eval( here")')

        assert result.valid is False

    def test_extra_patterns(self) -> None:
        """Test that a validator can extend the deny-list."""
        validator = CodeValidator(extra_patterns=["m365.mail.delete"])

        result = validator.validate("await m365.mail.delete('abc')")

        assert result.valid is False
        assert result.errors == ["Forbidden pattern detected: m365.mail.delete"]

    def test_pattern_catalog_is_flat(self) -> None:
        """Test that iter_patterns yields plain strings."""
        patterns = list(iter_patterns())

        assert "compile(" in patterns
        assert all(isinstance(p, str) and p for p in patterns)
