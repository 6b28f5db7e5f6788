"""
Paygate HTTP API (FastAPI).
"""
