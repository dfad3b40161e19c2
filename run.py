#!/usr/bin/env python
"""
Subscription webhook service entry point.
Run this file to start the development server; gunicorn serves `run:app`.
"""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

from app import create_app  # noqa: E402

# Create application instance
app = create_app(os.environ.get('FLASK_ENV', 'development'))

if __name__ == '__main__':
    host = os.environ.get('FLASK_HOST', '0.0.0.0')
    port = int(os.environ.get('FLASK_PORT', 5000))
    debug = os.environ.get('FLASK_DEBUG', 'false').lower() == 'true'

    app.logger.info(
        'Webhook endpoint: http://%s:%s/api/stripe/webhook (env=%s, debug=%s)',
        host, port, os.environ.get('FLASK_ENV', 'development'), debug,
    )

    app.run(host=host, port=port, debug=debug)
