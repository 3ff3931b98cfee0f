import os

# The settlement scheduler runs inside the app process: keep a single worker
worker_class = "gthread"
workers = 1
threads = int(os.getenv("GUNICORN_THREADS", "4"))
timeout = 25
graceful_timeout = 30
bind = "0.0.0.0:{}".format(os.getenv("PORT", "10000"))

loglevel = "info"
accesslog = "-"
errorlog = "-"
