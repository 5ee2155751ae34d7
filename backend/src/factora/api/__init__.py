"""
API package - FastAPI routers, request/response schemas and dependencies.
"""
