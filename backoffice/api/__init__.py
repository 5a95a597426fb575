"""
HTTP API
FastAPI application, routers and error handling.
"""
