"""Gunicorn configuration for production deployment.

Reads settings from environment variables (same names as core/config.py).

The response cache lives in process memory, so every worker holds its own
copy; invalidation in one worker is not seen by the others. Keep a single
worker unless that staleness is acceptable.

Usage:
    gunicorn main:app -c gunicorn.conf.py
"""
import os

host = os.getenv("HOST", "0.0.0.0")
port = os.getenv("PORT", "5000")
log_level = os.getenv("LOG_LEVEL", "INFO").lower()
debug = os.getenv("DEBUG", "false").lower() == "true"

bind = f"{host}:{port}"

workers = int(os.getenv("WORKERS", "1"))
worker_class = "uvicorn.workers.UvicornWorker"

timeout = int(os.getenv("GUNICORN_TIMEOUT", "60"))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", "5"))

accesslog = "-" if not debug else None
errorlog = "-"
loglevel = log_level

proc_name = "renoai-api"
