"""repo-atomic: atomic, rollback-safe operational workflows.

Wraps version control, code-hosting API and infrastructure-provisioning calls
in transactions that either complete entirely or are undone in reverse order.
"""

__version__ = "0.1.0"
