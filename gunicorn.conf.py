# © 2024–2025 Harnisch LLC. All Rights Reserved.
# Licensed exclusively for use by St. Edward Church & School (Nashville, TN).
# Unauthorized use, distribution, or modification is prohibited.

import os

# The sync lock and scheduler live in-process: exactly one worker
workers = 1
worker_class = 'gthread'
threads = int(os.environ.get('GUNICORN_THREADS', 4))
timeout = 120
keepalive = 2

wsgi_app = 'app:create_production_app()'

bind = f"0.0.0.0:{os.environ.get('PORT', '5000')}"

# Logging
loglevel = 'info'
accesslog = '-'
errorlog = '-'

# Build the app (and start the scheduler) inside the worker, not the master
preload_app = False

# Process naming
proc_name = 'exchange-calendar-sync'

# Worker lifecycle settings
max_requests = 0  # Don't restart workers after N requests
max_requests_jitter = 0
