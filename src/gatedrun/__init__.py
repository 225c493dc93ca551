"""gatedrun: policy-gated remote command execution."""

__version__ = "0.1.0"
