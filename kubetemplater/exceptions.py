"""Exception hierarchy for the KubeTemplater operator.

``terminal`` tells the worker whether retrying the same template can change
the outcome: terminal errors finish the pass, everything else goes back to the
work queue with backoff.
"""


class KubeTemplaterError(Exception):
    """Base exception for the operator"""

    terminal = False


# ============================================================================
# POLICY
# ============================================================================


class PolicyError(KubeTemplaterError):
    """Base exception for policy-related errors"""

    terminal = True


class PolicyCompilationError(PolicyError):
    """Malformed policy spec, rejected at load time"""


class PolicyStorageError(PolicyError):
    """Error storing/retrieving policy from storage"""

    terminal = False


class PolicyNotFoundError(PolicyError):
    """No policy governs the source namespace"""

    def __init__(self, source_namespace: str):
        self.source_namespace = source_namespace
        super().__init__(
            f"No KubeTemplatePolicy found for source namespace {source_namespace}"
        )


class AmbiguousPolicyError(PolicyError):
    """More than one policy claims the same source namespace"""

    def __init__(self, source_namespace: str, policies):
        self.source_namespace = source_namespace
        self.policies = sorted(policies)
        super().__init__(
            f"multiple KubeTemplatePolicies found for source namespace "
            f"{source_namespace}: {', '.join(self.policies)}"
        )


class AuthorizationError(PolicyError):
    """Kind or target namespace not permitted by the policy"""


class ValidationFailedError(PolicyError):
    """A field validation rule rejected a target object"""

    def __init__(self, message: str, failure=None):
        self.failure = failure
        super().__init__(message)


# ============================================================================
# CEL
# ============================================================================


class CelError(KubeTemplaterError):
    """Base exception for CEL expression handling"""


class CelCompileError(CelError):
    """Expression failed to parse"""


class CelEvaluationError(CelError):
    """Expression failed at evaluation time"""


# ============================================================================
# APPLY
# ============================================================================


class ObjectNotFoundError(KubeTemplaterError):
    """Object does not exist in the cluster"""


class ApplyError(KubeTemplaterError):
    """Base exception for errors writing target objects"""


class ImmutableFieldError(ApplyError):
    """The API server refused a change to an immutable field"""

    def __init__(self, message: str, fields=None):
        self.fields = list(fields or [])
        super().__init__(message)


class ApplyConflictError(ApplyError):
    """Immutable field change requested without replace"""

    terminal = True


class TransientApplyError(ApplyError):
    """Retryable cluster API failure (conflict, timeout, 5xx)"""


class UnknownResourceError(ApplyError):
    """The API server does not serve the requested kind"""

    terminal = True


class StatusConflictError(KubeTemplaterError):
    """KubeTemplate status write lost a resourceVersion race"""


class MalformedTemplateError(KubeTemplaterError):
    """KubeTemplate body does not have the expected shape"""

    terminal = True


# ============================================================================
# QUEUE / ADMISSION
# ============================================================================


class QueueClosedError(KubeTemplaterError):
    """Work queue has been shut down"""

    terminal = True


class AdmissionRejected(KubeTemplaterError):
    """KubeTemplate refused at admission time"""

    terminal = True
