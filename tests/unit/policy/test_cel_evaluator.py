"""Unit tests for CelEvaluator."""

import pytest

from kubetemplater.exceptions import CelCompileError, CelEvaluationError


@pytest.mark.unit
@pytest.mark.cel
class TestCelEvaluator:
    """Test compilation caching and boolean evaluation."""

    def test_boolean_expression(self, cel):
        assert cel.check("value > 1", {"value": 2})
        assert not cel.check("value > 1", {"value": 1})

    def test_object_bindings(self, cel):
        obj = {"metadata": {"name": "app-web", "labels": {"tier": "frontend"}}}

        assert cel.check("object.metadata.labels.tier == 'frontend'", {"object": obj})
        assert cel.check("object.metadata.name.startsWith('app-')", {"object": obj})

    def test_programs_are_cached(self, cel):
        first = cel.compile("value == 'cached'")
        second = cel.compile("value == 'cached'")

        assert first is second

    def test_parse_error(self, cel):
        with pytest.raises(CelCompileError):
            cel.compile("value >")

    def test_non_bool_result(self, cel):
        with pytest.raises(CelEvaluationError, match="expected bool"):
            cel.check("value + 1", {"value": 1})

    def test_missing_key_is_evaluation_error(self, cel):
        """Selecting an absent key fails evaluation instead of returning false."""
        with pytest.raises(CelEvaluationError):
            cel.check("object.spec.replicas > 1", {"object": {"metadata": {}}})
