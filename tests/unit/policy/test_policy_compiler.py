"""Unit tests for PolicyCompiler."""

import pytest

from kubetemplater.exceptions import PolicyCompilationError
from kubetemplater.models.policy import CompiledPolicy, FieldValidationType


def rule_with(*field_validations, **extra):
    rule = {
        "kind": "Deployment",
        "group": "apps",
        "version": "v1",
        "targetNamespaces": ["app-namespace"],
        "fieldValidations": list(field_validations),
    }
    rule.update(extra)
    return {"sourceNamespace": "app-namespace", "validationRules": [rule]}


@pytest.mark.unit
class TestPolicyCompiler:
    """Test compilation of valid policies."""

    def test_compile_basic_policy(self, compiler, app_policy_spec):
        """A well-formed policy compiles with its rules in document order."""
        compiled = compiler.compile_policy("app-policy", "kubetemplater-system", app_policy_spec)

        assert compiled.name == "app-policy"
        assert compiled.namespace == "kubetemplater-system"
        assert compiled.source_namespace == "app-namespace"
        assert [r.kind for r in compiled.validation_rules] == [
            "ConfigMap",
            "Secret",
            "Service",
            "Deployment",
        ]
        assert compiled.compiled_at
        assert len(compiled.hash) == 16

    def test_field_validations_are_typed(self, compiler, app_policy_spec):
        """Field validation types become enum members."""
        compiled = compiler.compile_policy("p", "ns", app_policy_spec)
        deployment = compiled.validation_rules[3]

        assert [fv.type for fv in deployment.field_validations] == [
            FieldValidationType.REQUIRED,
            FieldValidationType.RANGE,
        ]
        assert deployment.field_validations[1].min == 1
        assert deployment.field_validations[1].max == 5

    def test_hash_is_stable(self, compiler, app_policy_spec):
        """The same spec always hashes the same."""
        first = compiler.compile_policy("p", "ns", app_policy_spec)
        second = compiler.compile_policy("p", "ns", dict(app_policy_spec))

        assert first.hash == second.hash

    def test_round_trip_through_dict(self, compiler, app_policy_spec):
        """Compiled policies survive serialization for storage."""
        compiled = compiler.compile_policy("p", "ns", app_policy_spec)

        assert CompiledPolicy.from_dict(compiled.to_dict()) == compiled

    def test_cel_expressions_accepted(self, compiler):
        """Valid legacy and field CEL expressions compile."""
        spec = rule_with(
            {"name": "small", "type": "cel", "fieldPath": "spec.replicas", "cel": "value <= 3"},
            rule="object.metadata.name.startsWith('app-')",
        )

        compiled = compiler.compile_policy("p", "ns", spec)

        assert compiled.validation_rules[0].rule == "object.metadata.name.startsWith('app-')"

    def test_compilation_is_timed(self, compiler, observability, app_policy_spec):
        compiler.compile_policy("p", "ns", app_policy_spec)

        count = observability.registry.get_sample_value(
            "kubetemplater_policy_compilation_duration_seconds_count"
        )
        assert count == 1


@pytest.mark.unit
class TestPolicyCompilerErrors:
    """Test configuration errors are raised at load time."""

    def test_missing_source_namespace(self, compiler):
        with pytest.raises(PolicyCompilationError, match="sourceNamespace"):
            compiler.compile_policy("p", "ns", {"validationRules": []})

    def test_rule_requires_kind(self, compiler):
        spec = {"sourceNamespace": "a", "validationRules": [{"version": "v1"}]}

        with pytest.raises(PolicyCompilationError, match="kind is required"):
            compiler.compile_policy("p", "ns", spec)

    def test_unknown_validation_type(self, compiler):
        spec = rule_with({"name": "bad", "type": "glob", "fieldPath": "metadata.name"})

        with pytest.raises(PolicyCompilationError, match="unknown validation type: glob"):
            compiler.compile_policy("p", "ns", spec)

    def test_cel_requires_expression(self, compiler):
        spec = rule_with({"name": "empty", "type": "cel", "fieldPath": "spec"})

        with pytest.raises(PolicyCompilationError, match="CEL expression is required"):
            compiler.compile_policy("p", "ns", spec)

    def test_unparsable_cel(self, compiler):
        spec = rule_with({"name": "broken", "type": "cel", "cel": "value >"})

        with pytest.raises(PolicyCompilationError, match="broken"):
            compiler.compile_policy("p", "ns", spec)

    def test_unparsable_legacy_rule(self, compiler):
        spec = rule_with(rule="object.metadata.name ==")

        with pytest.raises(PolicyCompilationError, match="rule"):
            compiler.compile_policy("p", "ns", spec)

    def test_regex_requires_pattern(self, compiler):
        spec = rule_with({"name": "no-pattern", "type": "regex", "fieldPath": "metadata.name"})

        with pytest.raises(PolicyCompilationError, match="regex pattern is required"):
            compiler.compile_policy("p", "ns", spec)

    def test_regex_must_compile(self, compiler):
        spec = rule_with(
            {"name": "bad-pattern", "type": "regex", "fieldPath": "metadata.name", "regex": "[a-"}
        )

        with pytest.raises(PolicyCompilationError, match="invalid regex pattern"):
            compiler.compile_policy("p", "ns", spec)

    @pytest.mark.parametrize("vtype", ["regex", "range", "required", "forbidden"])
    def test_non_cel_types_require_field_path(self, compiler, vtype):
        """Only CEL validations may address the whole object."""
        spec = rule_with({"name": "whole", "type": vtype, "regex": ".*", "min": 1})

        with pytest.raises(PolicyCompilationError, match="fieldPath is required"):
            compiler.compile_policy("p", "ns", spec)

    def test_range_requires_a_bound(self, compiler):
        spec = rule_with({"name": "open", "type": "range", "fieldPath": "spec.replicas"})

        with pytest.raises(PolicyCompilationError, match="at least one of min or max"):
            compiler.compile_policy("p", "ns", spec)

    def test_range_min_above_max(self, compiler):
        spec = rule_with(
            {"name": "inverted", "type": "range", "fieldPath": "spec.replicas", "min": 5, "max": 1}
        )

        with pytest.raises(PolicyCompilationError, match="greater than max"):
            compiler.compile_policy("p", "ns", spec)

    def test_range_bounds_must_be_integers(self, compiler):
        spec = rule_with(
            {"name": "fractional", "type": "range", "fieldPath": "spec.replicas", "min": 1.5}
        )

        with pytest.raises(PolicyCompilationError, match="must be integers"):
            compiler.compile_policy("p", "ns", spec)

    def test_errors_are_counted(self, compiler, observability):
        with pytest.raises(PolicyCompilationError):
            compiler.compile_policy("p", "ns", {})

        errors = observability.registry.get_sample_value(
            "kubetemplater_policy_errors_total", {"error_type": "compilation"}
        )
        assert errors == 1
