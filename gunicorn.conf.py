# =============================================================================
# Subscription webhook - Gunicorn Production Configuration
# =============================================================================
# gunicorn -c gunicorn.conf.py run:app
import os
import multiprocessing

bind = f"0.0.0.0:{os.environ.get('PORT', '8080')}"

# With PENDING_ASSOCIATION_BACKEND=memory each worker keeps its own pending map;
# run a single worker or use the database backend.
workers = int(os.environ.get('WEB_CONCURRENCY', min(multiprocessing.cpu_count() * 2 + 1, 4)))

# Stripe abandons a delivery after about 20 seconds
timeout = 30

accesslog = "-"
errorlog = "-"
loglevel = os.environ.get("LOG_LEVEL", "info")
