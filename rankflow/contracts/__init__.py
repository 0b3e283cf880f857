"""Contracts package.

This package defines *public* cross-component contracts: event types, stream names,
envelope fields and per-type payload semantics. Components may only share types via
`rankflow.core` and `rankflow.contracts`.
"""
