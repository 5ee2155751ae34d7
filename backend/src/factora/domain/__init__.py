"""
Domain package - Core business logic with no external dependencies.

This package contains the invoice lifecycle records, the status edge set,
payload validation rules and the error taxonomy shared by every layer.
"""
