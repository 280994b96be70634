"""Admission-time validation of KubeTemplates.

Runs the same policy checks as a reconciliation pass so that most bad
templates are refused before they are stored, plus size limits that only make
sense at admission.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from kubetemplater.core.config import Settings, get_settings
from kubetemplater.exceptions import AdmissionRejected, MalformedTemplateError
from kubetemplater.models.template import KubeTemplate
from kubetemplater.reconciler.template_reconciler import TemplateValidator

logger = logging.getLogger(__name__)


def validate_template(
    body: Dict[str, Any],
    validator: TemplateValidator,
    settings: Optional[Settings] = None,
) -> List[str]:
    """Validate a KubeTemplate body; returns admission warnings.

    Raises AdmissionRejected with a message naming the offending entry.
    """
    settings = settings or get_settings()
    try:
        template = KubeTemplate.from_resource(body)
    except MalformedTemplateError as e:
        raise AdmissionRejected(str(e)) from e
    warnings: List[str] = []

    count = len(template.templates)
    if count > settings.max_templates_per_kubetemplate:
        raise AdmissionRejected(
            f"too many templates: {count} "
            f"(max allowed: {settings.max_templates_per_kubetemplate})"
        )

    for idx, entry in enumerate(template.templates):
        size = len(json.dumps(entry.object, separators=(",", ":")).encode())
        if size > settings.max_template_size_bytes:
            raise AdmissionRejected(
                f"template[{idx}]: size {size} bytes exceeds maximum allowed size of "
                f"{settings.max_template_size_bytes} bytes"
            )
        if not (entry.api_version and entry.kind and entry.name):
            raise AdmissionRejected(
                f"template[{idx}]: object must set apiVersion, kind and metadata.name"
            )

    validation = validator.validate(template)
    if not validation.passed:
        error = validation.error
        idx = validation.failed_index
        prefix = f"template[{idx}]: " if idx is not None else ""
        logger.info(f"Rejecting KubeTemplate {template.identity}: {error}")
        raise AdmissionRejected(f"{prefix}{error}") from error

    for idx, entry in enumerate(template.templates):
        if entry.replace:
            warnings.append(
                f"template[{idx}]: replace is enabled for {entry.gvk}/{entry.name}. "
                f"The resource will be deleted and recreated if immutable fields are changed"
            )

    return warnings