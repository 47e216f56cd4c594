"""HTTP server runners (gunicorn, WSGI)."""
