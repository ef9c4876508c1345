"""Build OCI specs and manage job processes in isolated runc containers."""

__version__ = "0.1.0"