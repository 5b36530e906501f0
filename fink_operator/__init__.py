"""FinK: reconciliation controller for `codesandbox.io/v1alpha1` VirtualMachine resources."""

__version__ = "0.1.0"
