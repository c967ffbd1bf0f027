# backend/wsgi.py
from chiptrack import create_app

app = create_app()
