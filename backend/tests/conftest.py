"""
Pytest configuration.

Settings are read from the environment when `app.core.config` is first
imported, so test defaults are set here before any test module imports the
application.
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017/checkout_test")
os.environ.setdefault("LEDGER_WRITE_BACKOFF_SECONDS", "0")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("PAGARME_WEBHOOK_SECRET", "pagarme_test_secret")
os.environ.setdefault("DISPATCH_ENABLED", "false")
