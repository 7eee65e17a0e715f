# backend/gunicorn_conf.py

# Gunicorn config file

import os

# Simulation runs are held in worker memory; every request for a run must hit
# the worker that created it, so keep a single worker unless runs are pinned.
bind = os.getenv("BIND", "0.0.0.0:8000")
workers = int(os.getenv("GUNICORN_WORKERS", "1"))
worker_class = "uvicorn.workers.UvicornWorker"
timeout = 30

# Settings for running behind a reverse proxy like Nginx
forwarded_allow_ips = "*"

# --- Logging ---
# app.utils.logging renders application logs; gunicorn's own go to stdout/stderr
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
