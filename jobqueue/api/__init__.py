"""
API module.
Contains the FastAPI application exposing the job server over HTTP.
"""
