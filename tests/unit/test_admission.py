"""Unit tests for admission-time KubeTemplate validation."""

import pytest

from conftest import configmap, make_template, service
from kubetemplater.admission import validate_template
from kubetemplater.core.config import Settings
from kubetemplater.exceptions import AdmissionRejected


@pytest.fixture
def settings():
    return Settings(max_templates_per_kubetemplate=3, max_template_size_bytes=512)


def entries(*objects, replace=False):
    return [{"object": obj, "replace": replace} for obj in objects]


@pytest.mark.unit
class TestAdmissionLimits:
    """Test limits enforced before policy evaluation."""

    def test_too_many_templates(self, validator, settings, app_policy):
        body = make_template(entries(*[configmap(f"cm-{i}") for i in range(4)]))

        with pytest.raises(AdmissionRejected, match=r"too many templates: 4 \(max allowed: 3\)"):
            validate_template(body, validator, settings)

    def test_oversized_template(self, validator, settings, app_policy):
        body = make_template(entries(configmap(), configmap("big", blob="x" * 1024)))

        with pytest.raises(AdmissionRejected) as exc_info:
            validate_template(body, validator, settings)

        message = str(exc_info.value)
        assert message.startswith("template[1]: size ")
        assert "exceeds maximum allowed size of 512 bytes" in message

    def test_object_identity_required(self, validator, settings, app_policy):
        body = make_template(entries({"apiVersion": "v1", "kind": "ConfigMap", "metadata": {}}))

        with pytest.raises(AdmissionRejected, match=r"template\[0\]: object must set"):
            validate_template(body, validator, settings)

    def test_malformed_entry_is_rejected(self, validator, settings, app_policy):
        body = make_template(["not-an-entry"])

        with pytest.raises(AdmissionRejected, match=r"template\[0\] must be an object"):
            validate_template(body, validator, settings)


@pytest.mark.unit
class TestAdmissionPolicy:
    """Test that admission applies the same policy checks as reconciliation."""

    def test_valid_template_is_admitted(self, validator, settings, app_policy):
        warnings = validate_template(make_template(entries(configmap())), validator, settings)

        assert warnings == []

    def test_rejection_names_failing_entry(self, validator, settings, app_policy):
        body = make_template(entries(configmap(), configmap("other", namespace="other-namespace")))

        with pytest.raises(AdmissionRejected) as exc_info:
            validate_template(body, validator, settings)

        assert str(exc_info.value).startswith(
            "template[1]: other-namespace is not an allowed target for resource ConfigMap"
        )

    def test_missing_policy_has_no_entry_prefix(self, validator, settings):
        with pytest.raises(AdmissionRejected) as exc_info:
            validate_template(make_template(entries(configmap())), validator, settings)

        assert str(exc_info.value).startswith("No KubeTemplatePolicy found")

    def test_replace_produces_warning(self, validator, settings, app_policy):
        body = make_template(entries(service(), replace=True))

        warnings = validate_template(body, validator, settings)

        assert warnings == [
            "template[0]: replace is enabled for v1, Kind=Service/web. The resource will be "
            "deleted and recreated if immutable fields are changed"
        ]
