"""Data access managers for the workspace runtime.

Each module provides async functions that encapsulate row operations and
lifecycle rules.  Managers accept ``AsyncSession`` as a parameter and raise
domain exceptions (``WorkspaceNotFoundError``, ``ValueError``), never HTTP
exceptions -- that translation is the router's responsibility.
"""
