"""API route modules, one router per concern."""
