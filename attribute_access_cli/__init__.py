"""Operator CLI for the attribute-scoped bucket stack.

Reads stack outputs, applies and checks the attribute-to-tag mapping, manages
the ``custom:client`` attribute on users and checks partition policies offline.
Command output is JSON on stdout so it can be piped into other tools.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
