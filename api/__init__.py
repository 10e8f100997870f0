"""
TourDash HTTP API (FastAPI).

Run with: uvicorn api.app:app
"""
