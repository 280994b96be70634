"""KubeTemplater: policy-governed templating operator for Kubernetes."""

__version__ = "0.1.0"
