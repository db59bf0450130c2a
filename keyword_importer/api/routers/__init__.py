"""
FastAPI routers for the keyword import API.
"""
