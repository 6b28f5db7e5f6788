"""
Infrastructure: logging setup and webhook delivery.
"""
