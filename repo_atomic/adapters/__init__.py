"""Adapters for the external systems operations drive.

Each adapter pairs a thin client for one system with a factory of
``Operation`` objects carrying the matching inverses:

    - git: Local repository through GitPython
    - hosting: GitHub-compatible REST API through httpx
    - provisioning: OpenTofu/Terraform through subprocess
    - filesystem: Atomic file writes with content restore
"""
