import os
from dotenv import load_dotenv

# Auto-load .env so PORT and other settings are picked up.
load_dotenv()

wsgi_app = "signal_governor.main:create_app()"
bind = f"0.0.0.0:{os.getenv('PORT', '8081')}"
# Admin surface only; ticks are cheap to serve from a couple of workers.
workers = int(os.getenv("GUNICORN_WORKERS", "2"))
worker_class = os.getenv("GUNICORN_WORKER_CLASS", "uvicorn.workers.UvicornWorker")
# A manual tick runs a whole governor pass inside the request.
timeout = int(os.getenv("GUNICORN_TIMEOUT", "300"))
# Default to stdout/stderr so container logs can be shipped by the host/agent.
accesslog = os.getenv("GUNICORN_ACCESS_LOG", "-")
errorlog = os.getenv("GUNICORN_ERROR_LOG", "-")
loglevel = os.getenv("LOG_LEVEL", "info").lower()
