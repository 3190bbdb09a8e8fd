# gunicornconf.py
# gunicorn -c gunicornconf.py "main:create_app()"

import os

# gevent workers: a request waiting on the identity provider, the VC service
# or the resource server does not block the others
workers = 2
worker_class = 'gevent'
loglevel = 'info'

bind = f"0.0.0.0:{os.getenv('PORT', '3001')}"

errorlog = "-"
accesslog = "-"

timeout = 60    # seconds
keepalive = 5   # seconds
capture_output = True

# Environment variables (passed into workers)
raw_env = [
    "FLASK_DEBUG=0",
    "BEHIND_PROXY=1",
]
